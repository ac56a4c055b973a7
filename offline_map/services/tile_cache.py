from __future__ import annotations

import logging
from typing import List, Sequence

import httpx

from ..settings import Settings
from .fetcher import BatchFetcher, DownloadJob, JobResult, ProgressCallback
from .projection import (
    BoundingBox,
    tile_count,
    tiles_in_bounding_box,
    visible_tile_urls,
    zoom_range,
)
from .store import StoreBackend, StoreRole, StoreUnavailable, TileStore, evict_oldest, store_name

logger = logging.getLogger(__name__)


class TileCacheService:
    """Commands the map application issues against the tile store."""

    def __init__(
        self,
        backend: StoreBackend,
        settings: Settings,
        *,
        fetcher: BatchFetcher | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self.transport = transport
        self.fetcher = fetcher or self._new_fetcher()

    def _new_fetcher(self) -> BatchFetcher:
        return BatchFetcher(
            concurrency=self.settings.concurrency,
            batch_delay_ms=self.settings.batch_delay_ms,
            timeout=self.settings.request_timeout,
            transport=self.transport,
        )

    @property
    def store_name(self) -> str:
        return store_name(StoreRole.TILES, self.settings.generation, self.settings.cache_prefix)

    @property
    def is_downloading(self) -> bool:
        return self.fetcher.is_busy

    def tile_store(self) -> TileStore:
        try:
            self.backend.open_store(self.store_name)
        except StoreUnavailable as exc:
            logger.warning("Tile store %s unavailable: %s", self.store_name, exc)
        return TileStore(self.backend, self.store_name)

    def tile_urls(self, box: BoundingBox, min_zoom: int, max_zoom: int) -> List[str]:
        return tiles_in_bounding_box(
            box, zoom_range(min_zoom, max_zoom), self.settings.tile_url_template
        )

    def estimate_tile_count(self, box: BoundingBox, min_zoom: int, max_zoom: int) -> int:
        return tile_count(box, zoom_range(min_zoom, max_zoom))

    def visible_tile_urls(self, box: BoundingBox, zoom: int) -> List[str]:
        return visible_tile_urls(box, zoom, self.settings.tile_url_template)

    def start_job(self, total: int) -> DownloadJob:
        return self.fetcher.start_job(total)

    async def cache_tiles(
        self,
        urls: Sequence[str],
        on_progress: ProgressCallback | None = None,
        *,
        job: DownloadJob | None = None,
    ) -> JobResult:
        if job is None:
            job = self.fetcher.start_job(len(urls))
        result = await self.fetcher.fetch_all(urls, self.tile_store(), on_progress, job=job)
        self.check_cache_size()
        return result

    async def download_area(
        self,
        box: BoundingBox,
        min_zoom: int,
        max_zoom: int,
        on_progress: ProgressCallback | None = None,
        *,
        job: DownloadJob | None = None,
    ) -> JobResult:
        urls = self.tile_urls(box, min_zoom, max_zoom)
        logger.info("Downloading %d tiles for zoom %d-%d", len(urls), min_zoom, max_zoom)
        return await self.cache_tiles(urls, on_progress, job=job)

    async def cache_visible_tiles(self, box: BoundingBox, zoom: int) -> JobResult:
        """Opportunistically cache what a viewport shows, capped per call.

        Runs on a fetcher of its own: viewport caching never holds or waits
        for the download job, and may interleave with a running area download.
        """

        urls = self.visible_tile_urls(box, zoom)[: self.settings.visible_tile_limit]
        logger.info("Auto-caching %d visible tiles", len(urls))
        result = await self._new_fetcher().fetch_all(urls, self.tile_store())
        self.check_cache_size()
        return result

    async def cache_tile(self, url: str) -> bool:
        return await self.fetcher.fetch_one(url, self.tile_store())

    def cancel_download(self) -> bool:
        job = self.fetcher.active_job
        if job is None:
            return False
        job.cancel()
        return True

    def clear_cache(self) -> bool:
        try:
            deleted = self.backend.delete_store(self.store_name)
        except StoreUnavailable as exc:
            logger.error("Error clearing cache: %s", exc)
            return False
        logger.info("Cache %s cleared", self.store_name)
        return deleted

    def get_cache_info(self) -> int:
        try:
            return len(self.backend.keys(self.store_name))
        except StoreUnavailable as exc:
            logger.error("Error getting cache info: %s", exc)
            return 0

    def check_cache_size(self) -> int:
        """Count cached tiles, evicting the oldest beyond the configured limit."""

        count = self.get_cache_info()
        limit = self.settings.max_cache_tiles
        if limit and count > limit:
            logger.warning("Cache size (%d) exceeds limit (%d)", count, limit)
            try:
                count -= evict_oldest(TileStore(self.backend, self.store_name), limit)
            except StoreUnavailable as exc:
                logger.error("Eviction failed: %s", exc)
        return count
