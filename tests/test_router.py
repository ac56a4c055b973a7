import asyncio
import json

import httpx

from offline_map.services.router import (
    CacheStrategyRouter,
    NetworkStatus,
    ResourceClass,
    ResponseSource,
    classify,
    resolve_url,
)
from offline_map.services.store import (
    CacheEntry,
    DisabledStoreBackend,
    MemoryStoreBackend,
    StoreRole,
    open_store,
)
from offline_map.services.tile_cache import TileCacheService
from offline_map.settings import Settings

TILE_URL = "https://server.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/10/380/548"
API_URL = "https://nominatim.openstreetmap.org/reverse?format=json&lat=41.8273&lon=12.6734"
ASSET_URL = "https://unpkg.com/leaflet@1.9.4/dist/leaflet.css"


class CountingTransport(httpx.AsyncBaseTransport):
    """Mock upstream that records every request it receives."""

    def __init__(self, handler) -> None:
        self.handler = handler
        self.requests = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


def _settings(**overrides) -> Settings:
    options = {"store_backend": "memory", "prewarm": False, "batch_delay_ms": 0}
    options.update(overrides)
    return Settings(**options)


def _router(backend, transport, network=None) -> CacheStrategyRouter:
    return CacheStrategyRouter(
        backend, _settings(), network=network or NetworkStatus(), transport=transport
    )


def test_classify_resources():
    settings = _settings()

    assert classify(TILE_URL, settings) == ResourceClass.TILE
    assert classify(API_URL, settings) == ResourceClass.API
    assert classify(ASSET_URL, settings) == ResourceClass.STATIC
    assert classify("https://services.arcgisonline.com/info", settings) == ResourceClass.STATIC
    assert classify("http://localhost:8000/app.js", settings) == ResourceClass.STATIC


def test_relative_urls_resolve_against_asset_origin():
    settings = _settings(asset_origin="http://maps.local:9000/")

    assert resolve_url("/styles.css", settings) == "http://maps.local:9000/styles.css"
    assert resolve_url(TILE_URL, settings) == TILE_URL


def test_cached_tile_is_served_without_network():
    transport = CountingTransport(
        lambda request: httpx.Response(200, content=b"jpeg", headers={"Content-Type": "image/jpeg"})
    )
    backend = MemoryStoreBackend()
    settings = _settings()
    tiles = TileCacheService(backend, settings, transport=transport)
    router = CacheStrategyRouter(backend, settings, transport=transport)

    assert asyncio.run(tiles.cache_tile(TILE_URL)) is True
    assert len(transport.requests) == 1

    routed = asyncio.run(router.handle(TILE_URL))

    assert routed.source == ResponseSource.CACHE
    assert routed.body == b"jpeg"
    assert routed.headers["content-type"] == "image/jpeg"
    assert len(transport.requests) == 1


def test_tile_miss_is_fetched_and_stored():
    transport = CountingTransport(lambda request: httpx.Response(200, content=b"jpeg"))
    backend = MemoryStoreBackend()
    router = _router(backend, transport)

    first = asyncio.run(router.handle(TILE_URL))
    second = asyncio.run(router.handle(TILE_URL))

    assert first.source == ResponseSource.NETWORK
    assert second.source == ResponseSource.CACHE
    assert len(transport.requests) == 1
    assert open_store(backend, StoreRole.TILES, "v1", "geocoordinate").keys() == {TILE_URL}


def test_tile_error_response_is_not_cached():
    transport = CountingTransport(lambda request: httpx.Response(404))
    backend = MemoryStoreBackend()
    router = _router(backend, transport)

    routed = asyncio.run(router.handle(TILE_URL))

    assert routed.status_code == 404
    assert routed.source == ResponseSource.NETWORK
    assert open_store(backend, StoreRole.TILES, "v1", "geocoordinate").count() == 0


def test_uncached_tile_offline_returns_placeholder():
    transport = CountingTransport(lambda request: httpx.Response(200))
    router = _router(MemoryStoreBackend(), transport, NetworkStatus(online=False))

    routed = asyncio.run(router.handle(TILE_URL))

    assert routed.status_code == 404
    assert routed.body == b"Tile not available offline"
    assert routed.source == ResponseSource.UNAVAILABLE
    assert transport.requests == []


def test_uncached_tile_with_unreachable_host_returns_placeholder():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    router = _router(MemoryStoreBackend(), httpx.MockTransport(handler))

    routed = asyncio.run(router.handle(TILE_URL))

    assert routed.status_code == 404
    assert routed.body == b"Tile not available offline"


def test_static_asset_offline_miss():
    router = _router(
        MemoryStoreBackend(),
        CountingTransport(lambda request: httpx.Response(200)),
        NetworkStatus(online=False),
    )

    routed = asyncio.run(router.handle("/missing.js"))

    assert routed.status_code == 404
    assert routed.body == b"Resource not available offline"
    assert routed.resource_class == ResourceClass.STATIC


def test_api_response_is_cached_and_replayed_offline():
    payload = {"display_name": "ESRIN, Frascati"}
    transport = CountingTransport(lambda request: httpx.Response(200, json=payload))
    backend = MemoryStoreBackend()
    network = NetworkStatus()
    router = _router(backend, transport, network)

    online = asyncio.run(router.handle(API_URL))
    network.set_online(False)
    offline = asyncio.run(router.handle(API_URL))

    assert online.source == ResponseSource.NETWORK
    assert offline.source == ResponseSource.CACHE
    assert json.loads(offline.body) == payload
    assert offline.headers["content-type"] == "application/json"
    assert len(transport.requests) == 1


def test_api_always_goes_to_network_first():
    responses = iter([b'{"n": 1}', b'{"n": 2}'])
    transport = CountingTransport(lambda request: httpx.Response(200, content=next(responses)))
    router = _router(MemoryStoreBackend(), transport)

    asyncio.run(router.handle(API_URL))
    second = asyncio.run(router.handle(API_URL))

    assert second.body == b'{"n": 2}'
    assert second.source == ResponseSource.NETWORK
    assert len(transport.requests) == 2


def test_api_miss_offline_returns_json_error():
    router = _router(
        MemoryStoreBackend(),
        CountingTransport(lambda request: httpx.Response(200)),
        NetworkStatus(online=False),
    )

    routed = asyncio.run(router.handle(API_URL))

    assert routed.status_code == 503
    assert json.loads(routed.body) == {"error": "Offline - data not cached"}
    assert routed.headers["content-type"] == "application/json"


def test_api_server_error_falls_back_to_cache():
    backend = MemoryStoreBackend()
    store = open_store(backend, StoreRole.DYNAMIC, "v1", "geocoordinate")
    store.put(API_URL, CacheEntry(key=API_URL, body=b'{"cached": true}'))
    router = _router(backend, CountingTransport(lambda request: httpx.Response(502)))

    routed = asyncio.run(router.handle(API_URL))

    assert routed.source == ResponseSource.CACHE
    assert routed.body == b'{"cached": true}'


def test_api_client_error_is_passed_through():
    backend = MemoryStoreBackend()
    store = open_store(backend, StoreRole.DYNAMIC, "v1", "geocoordinate")
    store.put(API_URL, CacheEntry(key=API_URL, body=b'{"cached": true}'))
    router = _router(backend, CountingTransport(lambda request: httpx.Response(429)))

    routed = asyncio.run(router.handle(API_URL))

    assert routed.status_code == 429
    assert routed.source == ResponseSource.NETWORK


def test_non_get_requests_are_not_cached():
    transport = CountingTransport(lambda request: httpx.Response(200, content=b"ok"))
    backend = MemoryStoreBackend()
    router = _router(backend, transport)

    asyncio.run(router.handle("https://example.test/form", "POST"))
    asyncio.run(router.handle("https://example.test/form", "POST"))

    assert len(transport.requests) == 2
    assert transport.requests[0].method == "POST"
    assert open_store(backend, StoreRole.STATIC, "v1", "geocoordinate").count() == 0


def test_disabled_store_serves_network_only():
    transport = CountingTransport(lambda request: httpx.Response(200, content=b"jpeg"))
    router = _router(DisabledStoreBackend(), transport)

    first = asyncio.run(router.handle(TILE_URL))
    second = asyncio.run(router.handle(TILE_URL))

    assert first.body == second.body == b"jpeg"
    assert first.source == second.source == ResponseSource.NETWORK
    assert len(transport.requests) == 2


def test_cache_miss_does_not_create_store():
    backend = MemoryStoreBackend()
    router = _router(
        backend, CountingTransport(lambda request: httpx.Response(200)), NetworkStatus(online=False)
    )

    asyncio.run(router.handle("/styles.css"))
    asyncio.run(router.handle(TILE_URL))

    assert backend.store_names() == []
