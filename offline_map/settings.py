from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Tuple

BASE_DIR = Path(__file__).resolve().parent.parent

DEFAULT_TILE_URL_TEMPLATE = (
    "https://server.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/{z}/{y}/{x}"
)
DEFAULT_TILE_HOST = "arcgisonline.com"
DEFAULT_TILE_PATH = "/tile/"
DEFAULT_API_HOST = "nominatim.openstreetmap.org"
DEFAULT_CACHE_PREFIX = "geocoordinate"
DEFAULT_GENERATION = "v1"
DEFAULT_CONCURRENCY = 10
DEFAULT_BATCH_DELAY_MS = 100
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_ASSET_ORIGIN = "http://localhost:8000"
DEFAULT_VISIBLE_TILE_LIMIT = 50

# Shell files the map UI needs to boot without a network connection.
DEFAULT_STATIC_ASSETS: Tuple[str, ...] = (
    "/",
    "/index.html",
    "/styles.css",
    "/app.js",
    "/map-manager.js",
    "/tile-cache.js",
    "/location-details.js",
    "/manifest.json",
    "/icons/icon-192x192.svg",
    "/icons/icon-512x512.svg",
    "/icons/favicon.svg",
    "https://unpkg.com/leaflet@1.9.4/dist/leaflet.css",
    "https://unpkg.com/leaflet@1.9.4/dist/leaflet.js",
)

STORE_BACKENDS = ("sql", "file", "memory", "disabled")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for the offline tile cache."""

    data_dir: Path = BASE_DIR / "data"
    database_url: str | None = None
    store_backend: str = "sql"
    cache_prefix: str = DEFAULT_CACHE_PREFIX
    generation: str = DEFAULT_GENERATION
    tile_url_template: str = DEFAULT_TILE_URL_TEMPLATE
    tile_host: str = DEFAULT_TILE_HOST
    tile_path: str = DEFAULT_TILE_PATH
    api_host: str = DEFAULT_API_HOST
    concurrency: int = DEFAULT_CONCURRENCY
    batch_delay_ms: int = DEFAULT_BATCH_DELAY_MS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    asset_origin: str = DEFAULT_ASSET_ORIGIN
    static_assets: Tuple[str, ...] = field(default=DEFAULT_STATIC_ASSETS)
    prewarm: bool = True
    prewarm_workers: int = 1
    max_cache_tiles: int = 0
    visible_tile_limit: int = DEFAULT_VISIBLE_TILE_LIMIT
    offline: bool = False

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'tile_cache.db'}"

    @property
    def file_store_dir(self) -> Path:
        return self.data_dir / "tile_store"


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name, "").strip()
    return value or default


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw_value = os.getenv(name, "").strip()
    if not raw_value:
        return default
    try:
        value = int(raw_value)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw_value = os.getenv(name, "").strip()
    if not raw_value:
        return default
    try:
        value = float(raw_value)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(name: str, default: bool) -> bool:
    raw_value = os.getenv(name, "").strip().lower()
    if not raw_value:
        return default
    if raw_value in {"1", "true", "yes", "on"}:
        return True
    if raw_value in {"0", "false", "no", "off"}:
        return False
    return default


def load_settings() -> Settings:
    """Build :class:`Settings` from ``OFFLINE_MAP_*`` environment variables."""

    data_dir_override = os.getenv("OFFLINE_MAP_DATA_DIR", "").strip()
    data_dir = Path(data_dir_override).expanduser() if data_dir_override else BASE_DIR / "data"

    store_backend = _env_str("OFFLINE_MAP_STORE", "sql").lower()
    if store_backend not in STORE_BACKENDS:
        store_backend = "sql"

    return Settings(
        data_dir=data_dir,
        database_url=os.getenv("OFFLINE_MAP_DATABASE_URL", "").strip() or None,
        store_backend=store_backend,
        cache_prefix=_env_str("OFFLINE_MAP_CACHE_PREFIX", DEFAULT_CACHE_PREFIX),
        generation=_env_str("OFFLINE_MAP_GENERATION", DEFAULT_GENERATION),
        tile_url_template=_env_str("OFFLINE_MAP_TILE_URL_TEMPLATE", DEFAULT_TILE_URL_TEMPLATE),
        tile_host=_env_str("OFFLINE_MAP_TILE_HOST", DEFAULT_TILE_HOST),
        api_host=_env_str("OFFLINE_MAP_API_HOST", DEFAULT_API_HOST),
        concurrency=_env_int("OFFLINE_MAP_CONCURRENCY", DEFAULT_CONCURRENCY, minimum=1),
        batch_delay_ms=_env_int("OFFLINE_MAP_BATCH_DELAY_MS", DEFAULT_BATCH_DELAY_MS),
        request_timeout=_env_float(
            "OFFLINE_MAP_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT, minimum=1.0
        ),
        asset_origin=_env_str("OFFLINE_MAP_ASSET_ORIGIN", DEFAULT_ASSET_ORIGIN),
        prewarm=_env_bool("OFFLINE_MAP_PREWARM", True),
        prewarm_workers=_env_int("OFFLINE_MAP_PREWARM_WORKERS", 1, minimum=1),
        max_cache_tiles=_env_int("OFFLINE_MAP_MAX_TILES", 0),
        visible_tile_limit=_env_int(
            "OFFLINE_MAP_VISIBLE_TILE_LIMIT", DEFAULT_VISIBLE_TILE_LIMIT, minimum=1
        ),
        offline=_env_bool("OFFLINE_MAP_OFFLINE", False),
    )
