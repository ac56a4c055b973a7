"""Install, activation and purge of cache generations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Sequence, Set, Tuple

import httpx

from ..settings import Settings
from .fetcher import BatchFetcher, JobResult
from .projection import InvalidCoordinate, bounding_box_around, tiles_in_bounding_box
from .router import NetworkStatus, resolve_url
from .store import (
    CacheEntry,
    StoreBackend,
    StoreRole,
    StoreUnavailable,
    TileStore,
    generation_store_names,
    open_store,
    store_name,
)

logger = logging.getLogger(__name__)

ESA_ZOOM_LEVELS: Tuple[int, ...] = (10, 11, 12, 13, 14, 15, 16)


@dataclass(frozen=True)
class PointOfInterest:
    name: str
    lat: float
    lon: float
    radius_km: float
    zoom_levels: Tuple[int, ...] = ESA_ZOOM_LEVELS


# ESA facilities pre-warmed at install time, with their surrounding areas.
POINTS_OF_INTEREST: Tuple[PointOfInterest, ...] = (
    PointOfInterest("ESRIN", 41.8273, 12.6734, 2),
    PointOfInterest("ESTEC", 52.2167, 4.4208, 2),
    PointOfInterest("ESOC", 49.8719, 8.6228, 2),
    PointOfInterest("ESA HQ", 48.8467, 2.3706, 2),
    PointOfInterest("ESAC", 40.4425, -3.9528, 2),
    PointOfInterest("CSG", 5.2394, -52.7683, 3),
)


class LifecycleState(str, Enum):
    INSTALLING = "installing"
    UPDATING = "updating"
    WAITING = "waiting"
    ACTIVE = "active"


class MessageType(str, Enum):
    SKIP_WAITING = "SKIP_WAITING"
    CLEAR_CACHE = "CLEAR_CACHE"
    RECACHE_POIS = "RECACHE_POIS"


class StaticAssetError(Exception):
    """Raised when the static asset manifest cannot be cached in full."""


@dataclass(frozen=True)
class PrewarmReport:
    facility: str
    tile_count: int
    result: JobResult

    def as_dict(self) -> Dict[str, object]:
        return {"facility": self.facility, "tile_count": self.tile_count, **self.result.as_dict()}


class CacheLifecycleManager:
    """Owns store generations for the running process.

    A fresh process either warm-starts on an existing generation or installs
    the configured one: static assets and point-of-interest tiles are fetched,
    then activation purges every store belonging to other generations.
    """

    def __init__(
        self,
        backend: StoreBackend,
        settings: Settings,
        *,
        points_of_interest: Sequence[PointOfInterest] = POINTS_OF_INTEREST,
        network: NetworkStatus | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self.points_of_interest = tuple(points_of_interest)
        self.network = network or NetworkStatus(online=not settings.offline)
        self.transport = transport
        self.state: LifecycleState | None = None
        self.last_prewarm: List[PrewarmReport] = []
        self._prewarm_lock = asyncio.Lock()

    @property
    def current_store_names(self) -> Set[str]:
        return generation_store_names(self.settings.generation, self.settings.cache_prefix)

    def stale_store_names(self) -> List[str]:
        current = self.current_store_names
        return [name for name in self.backend.store_names() if name not in current]

    async def start(self) -> LifecycleState:
        """Warm-start on the current generation or install it."""

        try:
            existing = set(self.backend.store_names())
        except StoreUnavailable as exc:
            logger.warning("Tile store unavailable, running network-only: %s", exc)
            self.state = LifecycleState.ACTIVE
            return self.state

        stale = [name for name in existing if name not in self.current_store_names]
        if not stale and self.is_installed():
            logger.info("Cache generation %s already active", self.settings.generation)
            self.state = LifecycleState.ACTIVE
            return self.state

        await self.install(updating=bool(stale))
        return self.state

    def manifest_urls(self) -> List[str]:
        return [resolve_url(asset, self.settings) for asset in self.settings.static_assets]

    def is_installed(self) -> bool:
        """True once every manifest asset of the current generation is stored.

        The static store alone is not enough: proxied requests may write single
        assets into it before the manifest was ever cached in full.
        """

        static_name = store_name(
            StoreRole.STATIC, self.settings.generation, self.settings.cache_prefix
        )
        try:
            cached = self.backend.keys(static_name)
        except StoreUnavailable:
            return False
        return set(self.manifest_urls()) <= cached

    async def install(self, *, updating: bool = False) -> bool:
        """Populate the current generation; activate it when static assets succeed."""

        self.state = LifecycleState.UPDATING if updating else LifecycleState.INSTALLING
        logger.info(
            "%s cache generation %s",
            "Updating to" if updating else "Installing",
            self.settings.generation,
        )

        prewarm = self.precache_points_of_interest() if self.settings.prewarm else _no_prewarm()
        static_ok, _ = await asyncio.gather(self._install_static_assets(), prewarm)

        self.state = LifecycleState.WAITING
        if static_ok:
            self.activate()
        else:
            logger.warning(
                "Generation %s installed without static assets; waiting for activation",
                self.settings.generation,
            )
        return static_ok

    async def _install_static_assets(self) -> bool:
        try:
            await self.cache_static_assets()
        except (StaticAssetError, StoreUnavailable) as exc:
            logger.error("Static asset caching failed: %s", exc)
            return False
        return True

    async def cache_static_assets(self) -> int:
        """Fetch the asset manifest and store it all-or-nothing."""

        if not self.network.online:
            raise StaticAssetError("network is offline")

        urls = self.manifest_urls()
        logger.info("Caching %d static assets", len(urls))

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.request_timeout),
            transport=self.transport,
            follow_redirects=True,
            headers={"Cache-Control": "no-cache"},
        ) as client:
            responses = await asyncio.gather(
                *(client.get(url) for url in urls), return_exceptions=True
            )

        entries: List[CacheEntry] = []
        for url, response in zip(urls, responses):
            if isinstance(response, httpx.RequestError):
                raise StaticAssetError(f"{url}: {type(response).__name__}: {response}")
            if isinstance(response, BaseException):
                raise response
            if not response.is_success:
                raise StaticAssetError(f"{url}: HTTP {response.status_code}")
            entries.append(
                CacheEntry.from_response(
                    url, response.content, response.status_code, response.headers
                )
            )

        store = open_store(
            self.backend, StoreRole.STATIC, self.settings.generation, self.settings.cache_prefix
        )
        for entry in entries:
            store.put(entry.key, entry)
        return len(entries)

    async def precache_points_of_interest(self) -> List[PrewarmReport]:
        """Pre-warm every facility through a queue of per-facility tasks."""

        if not self.network.online:
            logger.info("Skipping point-of-interest pre-warm while offline")
            return []

        async with self._prewarm_lock:
            try:
                store = open_store(
                    self.backend,
                    StoreRole.TILES,
                    self.settings.generation,
                    self.settings.cache_prefix,
                )
            except StoreUnavailable as exc:
                logger.warning("Cannot pre-warm tiles, store unavailable: %s", exc)
                return []

            queue: asyncio.Queue[Tuple[int, PointOfInterest]] = asyncio.Queue()
            for index, facility in enumerate(self.points_of_interest):
                queue.put_nowait((index, facility))

            reports: Dict[int, PrewarmReport] = {}

            async def worker() -> None:
                fetcher = BatchFetcher(
                    concurrency=self.settings.concurrency,
                    batch_delay_ms=self.settings.batch_delay_ms,
                    timeout=self.settings.request_timeout,
                    transport=self.transport,
                )
                while True:
                    try:
                        index, facility = queue.get_nowait()
                    except asyncio.QueueEmpty:
                        return
                    try:
                        reports[index] = await self._prewarm_facility(facility, fetcher, store)
                    except InvalidCoordinate as exc:
                        logger.error("Skipping facility %s: %s", facility.name, exc)
                    finally:
                        queue.task_done()

            worker_count = max(1, min(self.settings.prewarm_workers, len(self.points_of_interest)))
            await asyncio.gather(*(worker() for _ in range(worker_count)))

            self.last_prewarm = [reports[index] for index in sorted(reports)]
            logger.info("Pre-warmed %d points of interest", len(self.last_prewarm))
            return self.last_prewarm

    async def _prewarm_facility(
        self, facility: PointOfInterest, fetcher: BatchFetcher, store: TileStore
    ) -> PrewarmReport:
        box = bounding_box_around(facility.lat, facility.lon, facility.radius_km)
        urls = tiles_in_bounding_box(box, facility.zoom_levels, self.settings.tile_url_template)
        logger.info(
            "Caching %s (%.4f, %.4f): %d tiles", facility.name, facility.lat, facility.lon, len(urls)
        )
        result = await fetcher.fetch_all(urls, store)
        return PrewarmReport(facility=facility.name, tile_count=len(urls), result=result)

    def activate(self) -> List[str]:
        """Make the current generation active and purge all other stores."""

        purged: List[str] = []
        try:
            for name in self.stale_store_names():
                logger.info("Deleting old cache: %s", name)
                self.backend.delete_store(name)
                purged.append(name)
        except StoreUnavailable as exc:
            logger.warning("Could not purge stale caches: %s", exc)
        self.state = LifecycleState.ACTIVE
        return purged

    def skip_waiting(self) -> List[str]:
        if self.state != LifecycleState.WAITING:
            return []
        return self.activate()

    def clear_all_caches(self) -> List[str]:
        """Delete every store of every role and generation."""

        deleted: List[str] = []
        for name in self.backend.store_names():
            self.backend.delete_store(name)
            deleted.append(name)
        logger.info("Cleared %d caches", len(deleted))
        return deleted

    async def handle_message(self, message_type: str) -> Dict[str, object]:
        try:
            message = MessageType(message_type)
        except ValueError as exc:
            raise ValueError(f"Unknown lifecycle message: {message_type}") from exc

        if message == MessageType.SKIP_WAITING:
            payload: Dict[str, object] = {"purged": self.skip_waiting()}
        elif message == MessageType.CLEAR_CACHE:
            payload = {"deleted": self.clear_all_caches()}
        else:
            reports = await self.precache_points_of_interest()
            payload = {"facilities": [report.as_dict() for report in reports]}

        payload["type"] = message.value
        payload["state"] = self.state.value if self.state else None
        return payload

    def describe(self) -> Dict[str, object]:
        try:
            stores = self.backend.store_names()
        except StoreUnavailable:
            stores = []
        return {
            "state": self.state.value if self.state else None,
            "generation": self.settings.generation,
            "stores": stores,
            "current_stores": sorted(self.current_store_names),
        }


async def _no_prewarm() -> List[PrewarmReport]:
    return []
