"""Service utilities exposed by the ``offline_map.services`` package."""

from .fetcher import BatchFetcher, DownloadAlreadyInProgress, JobResult
from .lifecycle import CacheLifecycleManager, LifecycleState
from .projection import BoundingBox, InvalidCoordinate, TilePoint
from .router import CacheStrategyRouter, NetworkStatus, NetworkUnavailable
from .store import CacheEntry, StoreUnavailable, TileStore, create_backend
from .tile_cache import TileCacheService

__all__ = [
    "BatchFetcher",
    "BoundingBox",
    "CacheEntry",
    "CacheLifecycleManager",
    "CacheStrategyRouter",
    "DownloadAlreadyInProgress",
    "InvalidCoordinate",
    "JobResult",
    "LifecycleState",
    "NetworkStatus",
    "NetworkUnavailable",
    "StoreUnavailable",
    "TileCacheService",
    "TilePoint",
    "TileStore",
    "create_backend",
]
