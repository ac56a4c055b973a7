"""Bounded-concurrency batch downloading of tiles into a store."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Sequence, Union

import httpx

from .store import CacheEntry, StoreUnavailable, TileStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Union[Awaitable[None], None]]

DEFAULT_USER_AGENT = "offline-map-cache/0.1"
MAX_FAILURE_DETAILS = 50


class DownloadAlreadyInProgress(RuntimeError):
    """Raised when a download job is requested while another one is running."""


class FetchFailed(Exception):
    """A single tile could not be retrieved."""

    def __init__(self, url: str, detail: str) -> None:
        super().__init__(f"{url}: {detail}")
        self.url = url
        self.detail = detail


@dataclass(frozen=True)
class JobResult:
    total: int
    attempted: int
    persisted: int
    failed: int
    failures: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def skipped(self) -> int:
        return self.total - self.attempted

    def as_dict(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "attempted": self.attempted,
            "persisted": self.persisted,
            "failed": self.failed,
            "skipped": self.skipped,
            "failures": list(self.failures),
            "cancelled": self.cancelled,
        }


class DownloadJob:
    """Ownership token for the single download a fetcher runs at a time."""

    def __init__(self, total: int) -> None:
        self.id = uuid.uuid4().hex
        self.total = total
        self.completed = 0
        self.persisted = 0
        self.failed = 0
        self.failures: List[str] = []
        self.cancel_event = asyncio.Event()
        self.finished = False

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def record_failure(self, detail: str) -> None:
        self.failed += 1
        if len(self.failures) < MAX_FAILURE_DETAILS:
            self.failures.append(detail)

    def result(self) -> JobResult:
        return JobResult(
            total=self.total,
            attempted=self.completed,
            persisted=self.persisted,
            failed=self.failed,
            failures=list(self.failures),
            cancelled=self.cancelled and self.completed < self.total,
        )

    def progress(self) -> Dict[str, object]:
        return {
            "job_id": self.id,
            "completed": self.completed,
            "total": self.total,
            "persisted": self.persisted,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "finished": self.finished,
        }


class BatchFetcher:
    """Fetch tile URLs in sequential batches of concurrent requests.

    Individual failures are logged and counted but never raised, so a flaky
    provider only lowers the persisted count of a job.
    """

    def __init__(
        self,
        *,
        concurrency: int = 10,
        batch_delay_ms: int = 100,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.batch_delay_ms = max(0, batch_delay_ms)
        self.timeout = timeout
        self.transport = transport
        self._active_job: DownloadJob | None = None

    @property
    def is_busy(self) -> bool:
        return self._active_job is not None

    @property
    def active_job(self) -> DownloadJob | None:
        return self._active_job

    def start_job(self, total: int) -> DownloadJob:
        if self._active_job is not None:
            raise DownloadAlreadyInProgress(
                f"Download {self._active_job.id} is still running "
                f"({self._active_job.completed}/{self._active_job.total} tiles)."
            )
        job = DownloadJob(total)
        self._active_job = job
        return job

    def release(self, job: DownloadJob) -> None:
        job.finished = True
        if self._active_job is job:
            self._active_job = None

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            transport=self.transport,
            follow_redirects=True,
            headers={"User-Agent": DEFAULT_USER_AGENT},
        )

    async def fetch_all(
        self,
        urls: Sequence[str],
        store: TileStore,
        on_progress: ProgressCallback | None = None,
        *,
        job: DownloadJob | None = None,
    ) -> JobResult:
        """Download ``urls`` into ``store`` and release the job when done.

        ``job`` lets a caller reserve the fetcher with :meth:`start_job` first
        (to expose cancellation) and hand the token over here.
        """

        urls = list(urls)
        if job is None:
            job = self.start_job(len(urls))
        elif job is not self._active_job:
            raise ValueError("job does not own this fetcher")
        job.total = len(urls)

        logger.info(
            "Caching %d tiles into %s (batch size %d, delay %d ms)",
            job.total,
            store.name,
            self.concurrency,
            self.batch_delay_ms,
        )
        try:
            async with self.client() as client:
                for batch_index, start in enumerate(range(0, len(urls), self.concurrency)):
                    if batch_index and self.batch_delay_ms:
                        await asyncio.sleep(self.batch_delay_ms / 1000.0)
                    if job.cancelled:
                        logger.info(
                            "Download %s cancelled after %d/%d tiles",
                            job.id,
                            job.completed,
                            job.total,
                        )
                        break
                    batch = urls[start : start + self.concurrency]
                    await asyncio.gather(
                        *(self._attempt(client, url, store, job, on_progress) for url in batch)
                    )
        finally:
            self.release(job)

        result = job.result()
        logger.info(
            "Cached %d of %d tiles into %s (%d failed)",
            result.persisted,
            result.total,
            store.name,
            result.failed,
        )
        return result

    async def fetch_one(self, url: str, store: TileStore) -> bool:
        """Fetch and store one tile outside of any job."""

        async with self.client() as client:
            try:
                entry = await self._download(client, url)
                store.put(url, entry)
            except (FetchFailed, StoreUnavailable) as exc:
                logger.warning("Error caching tile %s: %s", url, exc)
                return False
        return True

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        url: str,
        store: TileStore,
        job: DownloadJob,
        on_progress: ProgressCallback | None,
    ) -> None:
        try:
            entry = await self._download(client, url)
            store.put(url, entry)
        except FetchFailed as exc:
            job.record_failure(str(exc))
            logger.warning("Failed to cache tile %s", exc)
        except StoreUnavailable as exc:
            job.record_failure(f"{url}: store unavailable ({exc})")
            logger.warning("Tile store rejected %s: %s", url, exc)
        else:
            job.persisted += 1

        job.completed += 1
        if on_progress is not None:
            await _notify(on_progress, job.completed, job.total)

    async def _download(self, client: httpx.AsyncClient, url: str) -> CacheEntry:
        try:
            response = await client.get(url)
        except httpx.RequestError as exc:
            raise FetchFailed(url, f"{type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            raise FetchFailed(url, f"HTTP {response.status_code}")

        return CacheEntry.from_response(
            url, response.content, response.status_code, response.headers
        )


async def _notify(callback: ProgressCallback, completed: int, total: int) -> None:
    try:
        outcome = callback(completed, total)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:
        logger.exception("Progress callback failed at %d/%d", completed, total)
