from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Set

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .services.fetcher import DownloadAlreadyInProgress
from .services.lifecycle import CacheLifecycleManager
from .services.projection import BoundingBox, InvalidCoordinate
from .services.router import CacheStrategyRouter, NetworkStatus
from .services.store import StoreBackend, StoreUnavailable, create_backend
from .services.tile_cache import TileCacheService
from .settings import Settings, load_settings

logger = logging.getLogger(__name__)

_background_tasks: Set["asyncio.Task[None]"] = set()


@dataclass
class OfflineMapRuntime:
    settings: Settings
    backend: StoreBackend
    network: NetworkStatus
    tiles: TileCacheService
    router: CacheStrategyRouter
    lifecycle: CacheLifecycleManager


def build_runtime(
    settings: Settings,
    backend: StoreBackend,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> OfflineMapRuntime:
    network = NetworkStatus(online=not settings.offline)
    return OfflineMapRuntime(
        settings=settings,
        backend=backend,
        network=network,
        tiles=TileCacheService(backend, settings, transport=transport),
        router=CacheStrategyRouter(backend, settings, network=network, transport=transport),
        lifecycle=CacheLifecycleManager(
            backend, settings, network=network, transport=transport
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = load_settings()
    runtime = build_runtime(settings, create_backend(settings))
    app.state.runtime = runtime

    install_task = asyncio.create_task(runtime.lifecycle.start())
    try:
        yield
    finally:
        if not install_task.done():
            install_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await install_task
        runtime.backend.close()


app = FastAPI(title="Offline Map Tile Cache", version="0.1.0", lifespan=lifespan)


def get_runtime(request: Request) -> OfflineMapRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Tile cache is not initialised")
    return runtime


class BoundsPayload(BaseModel):
    north: float
    south: float
    east: float
    west: float


class DownloadAreaRequest(BoundsPayload):
    min_zoom: int = Field(ge=0, le=22)
    max_zoom: int = Field(ge=0, le=22)


class VisibleTilesRequest(BoundsPayload):
    zoom: int = Field(ge=0, le=22)


class CacheTilesRequest(BaseModel):
    urls: List[str]


class LifecycleMessage(BaseModel):
    type: str


class NetworkUpdate(BaseModel):
    online: bool


def _bounding_box(north: float, south: float, east: float, west: float) -> BoundingBox:
    try:
        return BoundingBox(north=north, south=south, east=east, west=west)
    except InvalidCoordinate as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _sse_event(event: str, data: Dict[str, object]) -> bytes:
    payload = json.dumps(data)
    return f"event: {event}\ndata: {payload}\n\n".encode("utf-8")


@app.api_route("/proxy", methods=["GET", "POST", "HEAD"])
async def proxy(
    request: Request,
    url: str = Query(..., min_length=1),
    runtime: OfflineMapRuntime = Depends(get_runtime),
) -> Response:
    routed = await runtime.router.handle(url, request.method)
    headers = dict(routed.headers)
    headers["X-Cache-Source"] = routed.source.value
    headers["X-Resource-Class"] = routed.resource_class.value
    return Response(content=routed.body, status_code=routed.status_code, headers=headers)


@app.post("/tiles/cache")
async def cache_tiles(
    request: CacheTilesRequest, runtime: OfflineMapRuntime = Depends(get_runtime)
) -> Dict[str, object]:
    try:
        result = await runtime.tiles.cache_tiles(request.urls)
    except DownloadAlreadyInProgress as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return result.as_dict()


@app.post("/tiles/download-area")
async def download_area(
    request: DownloadAreaRequest, runtime: OfflineMapRuntime = Depends(get_runtime)
) -> Dict[str, object]:
    box = _bounding_box(request.north, request.south, request.east, request.west)
    try:
        result = await runtime.tiles.download_area(box, request.min_zoom, request.max_zoom)
    except InvalidCoordinate as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except DownloadAlreadyInProgress as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return result.as_dict()


@app.get("/tiles/download-area/stream")
async def stream_download_area(
    request: Request,
    north: float,
    south: float,
    east: float,
    west: float,
    min_zoom: int = Query(..., ge=0, le=22),
    max_zoom: int = Query(..., ge=0, le=22),
    runtime: OfflineMapRuntime = Depends(get_runtime),
):
    box = _bounding_box(north, south, east, west)
    try:
        urls = runtime.tiles.tile_urls(box, min_zoom, max_zoom)
        job = runtime.tiles.start_job(len(urls))
    except InvalidCoordinate as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except DownloadAlreadyInProgress as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    events: asyncio.Queue[tuple[str, Dict[str, object]]] = asyncio.Queue()

    async def enqueue(event: str, data: Dict[str, object]) -> None:
        await events.put((event, data))

    async def on_progress(completed: int, total: int) -> None:
        await enqueue("progress", {"completed": completed, "total": total})

    async def producer() -> None:
        try:
            await enqueue("status", {"job_id": job.id, "total": len(urls)})
            result = await runtime.tiles.cache_tiles(urls, on_progress, job=job)
        except Exception as exc:  # pragma: no cover - unexpected download failure
            logger.exception("Area download failed: %s", exc)
            await enqueue("error", {"message": "Unexpected error while downloading tiles."})
        else:
            await enqueue("cancelled" if result.cancelled else "complete", result.as_dict())
        finally:
            await enqueue("_end", {})

    # The job is already reserved, so the download starts now and releases it
    # even if the client never reads the stream.
    producer_task = asyncio.create_task(producer())
    _background_tasks.add(producer_task)
    producer_task.add_done_callback(_background_tasks.discard)

    async def event_stream() -> AsyncIterator[bytes]:
        try:
            while True:
                if await request.is_disconnected():
                    job.cancel()
                try:
                    event_type, payload = await asyncio.wait_for(events.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                if event_type == "_end":
                    break
                yield _sse_event(event_type, payload)
        finally:
            if not producer_task.done():
                job.cancel()
            await producer_task

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.get("/tiles/download/status")
def download_status(runtime: OfflineMapRuntime = Depends(get_runtime)) -> Dict[str, object]:
    job = runtime.tiles.fetcher.active_job
    if job is None:
        return {"downloading": False}
    return {"downloading": True, **job.progress()}


@app.post("/tiles/download/stop")
def stop_download(runtime: OfflineMapRuntime = Depends(get_runtime)) -> Dict[str, object]:
    if not runtime.tiles.cancel_download():
        return {"status": "not_found"}
    return {"status": "stopping"}


@app.get("/tiles/estimate")
def estimate_tile_count(
    north: float,
    south: float,
    east: float,
    west: float,
    min_zoom: int = Query(..., ge=0, le=22),
    max_zoom: int = Query(..., ge=0, le=22),
    runtime: OfflineMapRuntime = Depends(get_runtime),
) -> Dict[str, object]:
    box = _bounding_box(north, south, east, west)
    try:
        count = runtime.tiles.estimate_tile_count(box, min_zoom, max_zoom)
    except InvalidCoordinate as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"tiles": count, "min_zoom": min_zoom, "max_zoom": max_zoom}


@app.get("/tiles/visible")
def visible_tiles(
    north: float,
    south: float,
    east: float,
    west: float,
    zoom: int = Query(..., ge=0, le=22),
    runtime: OfflineMapRuntime = Depends(get_runtime),
) -> Dict[str, object]:
    box = _bounding_box(north, south, east, west)
    urls = runtime.tiles.visible_tile_urls(box, zoom)
    return {"zoom": zoom, "count": len(urls), "urls": urls}


@app.post("/tiles/visible/cache")
async def cache_visible_tiles(
    request: VisibleTilesRequest, runtime: OfflineMapRuntime = Depends(get_runtime)
) -> Dict[str, object]:
    if not runtime.network.online:
        return {"status": "offline", "persisted": 0}
    box = _bounding_box(request.north, request.south, request.east, request.west)
    result = await runtime.tiles.cache_visible_tiles(box, request.zoom)
    return {"status": "cached", **result.as_dict()}


@app.delete("/tiles/cache")
def clear_cache(runtime: OfflineMapRuntime = Depends(get_runtime)) -> Dict[str, object]:
    return {"cleared": runtime.tiles.clear_cache(), "store": runtime.tiles.store_name}


@app.get("/tiles/cache/info")
def cache_info(runtime: OfflineMapRuntime = Depends(get_runtime)) -> Dict[str, object]:
    return {
        "store": runtime.tiles.store_name,
        "tiles": runtime.tiles.get_cache_info(),
        "downloading": runtime.tiles.is_downloading,
    }


@app.get("/lifecycle")
def lifecycle_state(runtime: OfflineMapRuntime = Depends(get_runtime)) -> Dict[str, object]:
    return runtime.lifecycle.describe()


@app.post("/lifecycle/messages")
async def lifecycle_message(
    message: LifecycleMessage, runtime: OfflineMapRuntime = Depends(get_runtime)
) -> Dict[str, object]:
    try:
        return await runtime.lifecycle.handle_message(message.type.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=f"Tile store unavailable: {exc}") from exc


@app.get("/network")
def network_state(runtime: OfflineMapRuntime = Depends(get_runtime)) -> Dict[str, object]:
    return {"online": runtime.network.online}


@app.post("/network")
def update_network(
    update: NetworkUpdate, runtime: OfflineMapRuntime = Depends(get_runtime)
) -> Dict[str, object]:
    runtime.network.set_online(update.online)
    return {"online": runtime.network.online}
