"""Per-resource cache strategies for proxied requests.

Map tiles and static assets are served cache-first; geocoding API calls are
network-first with the dynamic store as an offline fallback.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict
from urllib.parse import urljoin, urlsplit

import httpx

from ..settings import Settings
from .store import (
    CacheEntry,
    StoreBackend,
    StoreRole,
    StoreUnavailable,
    TileStore,
    content_headers,
    store_name,
)

logger = logging.getLogger(__name__)

TILE_UNAVAILABLE_TEXT = "Tile not available offline"
STATIC_UNAVAILABLE_TEXT = "Resource not available offline"
DATA_UNAVAILABLE_PAYLOAD = {"error": "Offline - data not cached"}


class NetworkUnavailable(Exception):
    """No transport could reach the upstream host."""


class ResourceClass(str, Enum):
    TILE = "tile"
    API = "api"
    STATIC = "static"


class ResponseSource(str, Enum):
    CACHE = "cache"
    NETWORK = "network"
    UNAVAILABLE = "unavailable"


@dataclass
class RoutedResponse:
    status_code: int
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    source: ResponseSource = ResponseSource.NETWORK
    resource_class: ResourceClass = ResourceClass.STATIC

    @classmethod
    def from_entry(cls, entry: CacheEntry, resource_class: ResourceClass) -> "RoutedResponse":
        return cls(
            status_code=entry.status_code,
            body=entry.body,
            headers=dict(entry.headers),
            source=ResponseSource.CACHE,
            resource_class=resource_class,
        )

    @classmethod
    def tile_unavailable(cls) -> "RoutedResponse":
        return cls(
            status_code=404,
            body=TILE_UNAVAILABLE_TEXT.encode("utf-8"),
            headers={"content-type": "text/plain; charset=utf-8"},
            source=ResponseSource.UNAVAILABLE,
            resource_class=ResourceClass.TILE,
        )

    @classmethod
    def static_unavailable(cls) -> "RoutedResponse":
        return cls(
            status_code=404,
            body=STATIC_UNAVAILABLE_TEXT.encode("utf-8"),
            headers={"content-type": "text/plain; charset=utf-8"},
            source=ResponseSource.UNAVAILABLE,
            resource_class=ResourceClass.STATIC,
        )

    @classmethod
    def data_unavailable(cls) -> "RoutedResponse":
        return cls(
            status_code=503,
            body=json.dumps(DATA_UNAVAILABLE_PAYLOAD).encode("utf-8"),
            headers={"content-type": "application/json"},
            source=ResponseSource.UNAVAILABLE,
            resource_class=ResourceClass.API,
        )

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class NetworkStatus:
    """Reachability flag consulted before any upstream request."""

    def __init__(self, online: bool = True) -> None:
        self._online = online

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online != self._online:
            logger.info("Network marked %s", "online" if online else "offline")
        self._online = online


def classify(url: str, settings: Settings) -> ResourceClass:
    """Map a URL to its caching strategy; tile rules win over API rules."""

    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    if settings.tile_host and settings.tile_host in host and settings.tile_path in parts.path:
        return ResourceClass.TILE
    if settings.api_host and settings.api_host in host:
        return ResourceClass.API
    return ResourceClass.STATIC


def resolve_url(url: str, settings: Settings) -> str:
    """Absolute form of ``url``; relative paths resolve against the asset origin."""

    if urlsplit(url).scheme:
        return url
    return urljoin(settings.asset_origin.rstrip("/") + "/", url.lstrip("/"))


class CacheStrategyRouter:
    def __init__(
        self,
        backend: StoreBackend,
        settings: Settings,
        *,
        network: NetworkStatus | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self.network = network or NetworkStatus(online=not settings.offline)
        self.transport = transport

    def store_for(self, resource_class: ResourceClass) -> TileStore:
        """Handle on the store for ``resource_class``; lookups never create it."""

        role = {
            ResourceClass.TILE: StoreRole.TILES,
            ResourceClass.API: StoreRole.DYNAMIC,
            ResourceClass.STATIC: StoreRole.STATIC,
        }[resource_class]
        return TileStore(
            self.backend, store_name(role, self.settings.generation, self.settings.cache_prefix)
        )

    async def handle(self, url: str, method: str = "GET") -> RoutedResponse:
        url = resolve_url(url, self.settings)
        method = method.upper()
        resource_class = classify(url, self.settings)
        if resource_class == ResourceClass.TILE:
            return await self._cache_first(url, method, resource_class)
        if resource_class == ResourceClass.API:
            return await self._network_first(url, method)
        return await self._cache_first(url, method, resource_class)

    async def _cache_first(
        self, url: str, method: str, resource_class: ResourceClass
    ) -> RoutedResponse:
        store = self.store_for(resource_class)
        cacheable = method == "GET"

        if cacheable:
            cached = self._lookup(store, url)
            if cached is not None:
                return RoutedResponse.from_entry(cached, resource_class)

        try:
            response = await self._fetch(url, method, resource_class)
        except NetworkUnavailable as exc:
            logger.debug("No cached copy of %s and network unavailable: %s", url, exc)
            if resource_class == ResourceClass.TILE:
                return RoutedResponse.tile_unavailable()
            return RoutedResponse.static_unavailable()

        if cacheable and response.ok:
            self._remember(store, url, response)
        return response

    async def _network_first(self, url: str, method: str) -> RoutedResponse:
        store = self.store_for(ResourceClass.API)
        try:
            response = await self._fetch(url, method, ResourceClass.API)
        except NetworkUnavailable as exc:
            logger.info("Geocoding request falling back to cache: %s", exc)
        else:
            if response.ok:
                if method == "GET":
                    self._remember(store, url, response)
                return response
            if response.status_code < 500:
                return response
            logger.warning(
                "Geocoding request failed with HTTP %d, falling back to cache",
                response.status_code,
            )

        cached = self._lookup(store, url) if method == "GET" else None
        if cached is not None:
            return RoutedResponse.from_entry(cached, ResourceClass.API)
        return RoutedResponse.data_unavailable()

    async def _fetch(
        self, url: str, method: str, resource_class: ResourceClass
    ) -> RoutedResponse:
        if not self.network.online:
            raise NetworkUnavailable("network is offline")

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.request_timeout),
            transport=self.transport,
            follow_redirects=True,
        ) as client:
            try:
                response = await client.request(method, url)
            except httpx.RequestError as exc:
                raise NetworkUnavailable(f"{type(exc).__name__}: {exc}") from exc

        return RoutedResponse(
            status_code=response.status_code,
            body=response.content,
            headers=content_headers(response.headers),
            source=ResponseSource.NETWORK,
            resource_class=resource_class,
        )

    def _lookup(self, store: TileStore, url: str) -> CacheEntry | None:
        try:
            return store.get(url)
        except StoreUnavailable as exc:
            logger.warning("Cache lookup for %s failed, treating as miss: %s", url, exc)
            return None

    def _remember(self, store: TileStore, url: str, response: RoutedResponse) -> None:
        entry = CacheEntry(
            key=url,
            body=response.body,
            status_code=response.status_code,
            headers=dict(response.headers),
        )
        try:
            store.put(url, entry)
        except StoreUnavailable as exc:
            logger.warning("Could not cache %s: %s", url, exc)
