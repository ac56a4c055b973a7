import asyncio

import httpx
import pytest

import offline_map.services.fetcher as fetcher_module
from offline_map.services.fetcher import BatchFetcher, DownloadAlreadyInProgress
from offline_map.services.store import (
    DisabledStoreBackend,
    MemoryStoreBackend,
    StoreRole,
    TileStore,
    open_store,
)

TILE_TEMPLATE = "https://server.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/10/{y}/{x}"


def _urls(count: int) -> list:
    return [TILE_TEMPLATE.format(x=548 + index, y=380) for index in range(count)]


def _tile_store() -> TileStore:
    return open_store(MemoryStoreBackend(), StoreRole.TILES, "v1", "geocoordinate")


def test_progress_is_strictly_increasing_despite_failures():
    urls = _urls(6)
    failing = {urls[1]: 500, urls[4]: 404}
    unreachable = urls[2]

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url == unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        if url in failing:
            return httpx.Response(failing[url])
        return httpx.Response(200, content=b"tile", headers={"Content-Type": "image/jpeg"})

    fetcher = BatchFetcher(concurrency=1, batch_delay_ms=0, transport=httpx.MockTransport(handler))
    store = _tile_store()
    progress = []

    result = asyncio.run(
        fetcher.fetch_all(urls, store, on_progress=lambda done, total: progress.append((done, total)))
    )

    assert progress == [(index, 6) for index in range(1, 7)]
    assert result.total == 6
    assert result.attempted == 6
    assert result.persisted == 3
    assert result.failed == 3
    assert len(result.failures) == 3
    assert not result.cancelled
    assert store.keys() == {urls[0], urls[3], urls[5]}
    assert store.get(urls[0]).headers["content-type"] == "image/jpeg"
    assert not fetcher.is_busy


def test_batches_run_sequentially_with_bounded_concurrency():
    urls = _urls(7)
    in_flight = 0
    peak = 0
    order = []

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        order.append(("start", str(request.url)))
        await asyncio.sleep(0.01)
        in_flight -= 1
        order.append(("end", str(request.url)))
        return httpx.Response(200, content=b"tile")

    fetcher = BatchFetcher(concurrency=3, batch_delay_ms=0, transport=httpx.MockTransport(handler))
    store = _tile_store()

    result = asyncio.run(fetcher.fetch_all(urls, store))

    assert result.persisted == 7
    assert peak == 3
    # batch two (urls 3-5) must not start before all of batch one finished
    first_batch_ends = [order.index(("end", url)) for url in urls[:3]]
    second_batch_starts = [order.index(("start", url)) for url in urls[3:6]]
    assert max(first_batch_ends) < min(second_batch_starts)


def test_delay_only_between_batches(monkeypatch):
    delays = []
    real_sleep = asyncio.sleep

    async def fake_sleep(seconds, *args, **kwargs):
        delays.append(seconds)
        await real_sleep(0)

    monkeypatch.setattr(fetcher_module.asyncio, "sleep", fake_sleep)

    fetcher = BatchFetcher(
        concurrency=2,
        batch_delay_ms=250,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"t")),
    )

    result = asyncio.run(fetcher.fetch_all(_urls(5), _tile_store()))

    assert result.persisted == 5
    assert delays == [0.25, 0.25]


def test_second_job_fails_fast_without_touching_first():
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        await release.wait()
        return httpx.Response(200, content=b"tile")

    fetcher = BatchFetcher(concurrency=2, batch_delay_ms=0, transport=httpx.MockTransport(handler))
    store = _tile_store()
    first_progress = []

    async def scenario():
        first = asyncio.create_task(
            fetcher.fetch_all(
                _urls(4), store, on_progress=lambda done, total: first_progress.append(done)
            )
        )
        await asyncio.sleep(0)
        assert fetcher.is_busy

        with pytest.raises(DownloadAlreadyInProgress):
            await fetcher.fetch_all(_urls(2), store)
        assert fetcher.active_job.completed == 0

        release.set()
        return await first

    result = asyncio.run(scenario())

    assert result.persisted == 4
    assert first_progress == [1, 2, 3, 4]
    assert not fetcher.is_busy


def test_cancel_stops_before_next_batch():
    fetcher = BatchFetcher(
        concurrency=2,
        batch_delay_ms=0,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"t")),
    )
    store = _tile_store()
    job = fetcher.start_job(6)

    def on_progress(done, total):
        if done == 2:
            job.cancel()

    result = asyncio.run(fetcher.fetch_all(_urls(6), store, on_progress, job=job))

    assert result.cancelled
    assert result.attempted == 2
    assert result.skipped == 4
    assert store.count() == 2
    assert not fetcher.is_busy


def test_unavailable_store_counts_as_failure():
    fetcher = BatchFetcher(
        concurrency=4,
        batch_delay_ms=0,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"t")),
    )
    store = TileStore(DisabledStoreBackend(), "geocoordinate-tiles-v1")

    result = asyncio.run(fetcher.fetch_all(_urls(3), store))

    assert result.persisted == 0
    assert result.failed == 3
    assert result.attempted == 3


def test_fetch_one_reports_success_and_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/548"):
            return httpx.Response(200, content=b"tile")
        return httpx.Response(503)

    fetcher = BatchFetcher(transport=httpx.MockTransport(handler))
    store = _tile_store()
    ok_url, bad_url = _urls(2)

    assert asyncio.run(fetcher.fetch_one(ok_url, store)) is True
    assert asyncio.run(fetcher.fetch_one(bad_url, store)) is False
    assert store.keys() == {ok_url}


def test_async_progress_callback_is_awaited():
    seen = []

    async def on_progress(done, total):
        await asyncio.sleep(0)
        seen.append((done, total))

    fetcher = BatchFetcher(
        concurrency=5,
        batch_delay_ms=0,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"t")),
    )

    asyncio.run(fetcher.fetch_all(_urls(3), _tile_store(), on_progress))

    assert [done for done, _ in seen] == [1, 2, 3]
