import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from offline_map.services.fetcher import DownloadAlreadyInProgress
from offline_map.services.projection import BoundingBox
from offline_map.services.store import (
    CacheEntry,
    DisabledStoreBackend,
    MemoryStoreBackend,
    TileStore,
)
from offline_map.services.tile_cache import TileCacheService
from offline_map.settings import Settings

ESRIN_AREA = BoundingBox(north=41.845, south=41.809, east=12.697, west=12.649)


def _settings(**overrides) -> Settings:
    options = {"store_backend": "memory", "batch_delay_ms": 0, "concurrency": 4}
    options.update(overrides)
    return Settings(**options)


def _ok_transport() -> httpx.MockTransport:
    return httpx.MockTransport(
        lambda request: httpx.Response(200, content=b"jpeg", headers={"Content-Type": "image/jpeg"})
    )


def test_estimate_matches_download_plan():
    service = TileCacheService(MemoryStoreBackend(), _settings(), transport=_ok_transport())

    urls = service.tile_urls(ESRIN_AREA, 10, 13)

    assert service.estimate_tile_count(ESRIN_AREA, 10, 13) == len(urls)
    assert len(set(urls)) == len(urls)
    assert "/tile/10/" in urls[0] and "/tile/13/" in urls[-1]


def test_download_area_reports_progress_and_fills_store():
    backend = MemoryStoreBackend()
    service = TileCacheService(backend, _settings(), transport=_ok_transport())
    progress = []

    result = asyncio.run(
        service.download_area(
            ESRIN_AREA, 10, 12, on_progress=lambda done, total: progress.append((done, total))
        )
    )

    assert result.total == service.estimate_tile_count(ESRIN_AREA, 10, 12)
    assert result.persisted == result.total
    assert [done for done, _ in progress] == list(range(1, result.total + 1))
    assert service.get_cache_info() == result.total
    assert not service.is_downloading


def test_concurrent_download_is_rejected_without_disturbing_first():
    release = asyncio.Event()

    async def handler(request):
        await release.wait()
        return httpx.Response(200, content=b"jpeg")

    service = TileCacheService(
        MemoryStoreBackend(), _settings(), transport=httpx.MockTransport(handler)
    )

    async def scenario():
        first = asyncio.create_task(service.download_area(ESRIN_AREA, 10, 11))
        await asyncio.sleep(0)
        assert service.is_downloading
        with pytest.raises(DownloadAlreadyInProgress):
            await service.download_area(ESRIN_AREA, 12, 12)
        release.set()
        return await first

    result = asyncio.run(scenario())

    assert result.persisted == result.total
    assert not result.cancelled
    assert not service.is_downloading


def test_cancel_download_without_job():
    service = TileCacheService(MemoryStoreBackend(), _settings(), transport=_ok_transport())

    assert service.cancel_download() is False


def test_cancel_download_stops_running_job():
    service = TileCacheService(
        MemoryStoreBackend(), _settings(concurrency=1), transport=_ok_transport()
    )

    def on_progress(done, total):
        if done == 1:
            assert service.cancel_download() is True

    result = asyncio.run(service.download_area(ESRIN_AREA, 10, 12, on_progress))

    assert result.cancelled
    assert result.attempted == 1
    assert service.get_cache_info() == 1


def test_clear_cache_empties_tile_store():
    backend = MemoryStoreBackend()
    service = TileCacheService(backend, _settings(), transport=_ok_transport())
    asyncio.run(service.download_area(ESRIN_AREA, 10, 10))
    assert service.get_cache_info() > 0

    assert service.clear_cache() is True
    assert service.get_cache_info() == 0
    assert service.clear_cache() is False


def test_cache_size_limit_evicts_oldest_tiles():
    backend = MemoryStoreBackend()
    service = TileCacheService(backend, _settings(max_cache_tiles=3), transport=_ok_transport())
    store = service.tile_store()
    base = datetime(2024, 1, 1)
    for index in range(5):
        key = f"https://server.arcgisonline.com/tile/1/0/{index}"
        store.put(key, CacheEntry(key=key, body=b"x", stored_at=base + timedelta(seconds=index)))

    remaining = service.check_cache_size()

    assert remaining == 3
    assert store.keys() == {
        "https://server.arcgisonline.com/tile/1/0/2",
        "https://server.arcgisonline.com/tile/1/0/3",
        "https://server.arcgisonline.com/tile/1/0/4",
    }


def test_visible_tiles_are_capped_per_call():
    backend = MemoryStoreBackend()
    service = TileCacheService(
        backend, _settings(visible_tile_limit=2), transport=_ok_transport()
    )
    assert len(service.visible_tile_urls(ESRIN_AREA, 14)) > 2

    result = asyncio.run(service.cache_visible_tiles(ESRIN_AREA, 14))

    assert result.total == 2
    assert service.get_cache_info() == 2


def test_unavailable_store_reports_empty_cache():
    service = TileCacheService(DisabledStoreBackend(), _settings(), transport=_ok_transport())

    assert service.get_cache_info() == 0
    assert service.clear_cache() is False
    assert isinstance(service.tile_store(), TileStore)

    result = asyncio.run(service.cache_tiles(service.tile_urls(ESRIN_AREA, 10, 10)))

    assert result.persisted == 0
    assert result.failed == result.total


def test_visible_caching_does_not_hold_the_download_job():
    release = asyncio.Event()

    async def handler(request):
        if "/tile/14/" in request.url.path:
            await release.wait()
        return httpx.Response(200, content=b"jpeg")

    service = TileCacheService(
        MemoryStoreBackend(), _settings(), transport=httpx.MockTransport(handler)
    )

    async def scenario():
        visible = asyncio.create_task(service.cache_visible_tiles(ESRIN_AREA, 14))
        await asyncio.sleep(0)
        assert not service.is_downloading
        area = await service.download_area(ESRIN_AREA, 10, 10)
        release.set()
        return area, await visible

    area, visible = asyncio.run(scenario())

    assert area.persisted == area.total > 0
    assert visible.persisted == visible.total > 0
    assert service.get_cache_info() == area.total + visible.total
