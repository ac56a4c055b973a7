"""Keyed byte-blob stores partitioned by role and generation.

A store is addressed by name (``<prefix>-<role>-<generation>``) and maps
request URLs to :class:`CacheEntry` values. Backends implement the narrow
:class:`StoreBackend` contract; :class:`TileStore` is the handle the rest of
the service works with.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Mapping, Set, Tuple

if TYPE_CHECKING:
    from ..settings import Settings

logger = logging.getLogger(__name__)

# Only headers needed to replay a response are persisted with the body.
CONTENT_HEADERS = ("content-type", "cache-control", "etag", "last-modified", "expires")
STORE_NAME_PATTERN = re.compile(r"^(?P<prefix>.+?)-(?P<role>static|tiles|dynamic)-(?P<generation>.+)$")


class StoreUnavailable(Exception):
    """Raised when the persistence engine behind a store cannot be used."""


class StoreRole(str, Enum):
    STATIC = "static"
    TILES = "tiles"
    DYNAMIC = "dynamic"


def content_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {
        name.lower(): value for name, value in headers.items() if name.lower() in CONTENT_HEADERS
    }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC so stored entries always compare."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def store_name(role: StoreRole, generation: str, prefix: str) -> str:
    return f"{prefix}-{StoreRole(role).value}-{generation}"


def generation_store_names(generation: str, prefix: str) -> Set[str]:
    return {store_name(role, generation, prefix) for role in StoreRole}


def parse_store_name(name: str) -> Tuple[StoreRole, str] | None:
    """Role and generation encoded in ``name``, or ``None`` for foreign names."""

    match = STORE_NAME_PATTERN.match(name)
    if match is None:
        return None
    return StoreRole(match.group("role")), match.group("generation")


@dataclass
class CacheEntry:
    """A stored response: the body plus the headers needed to serve it again."""

    key: str
    body: bytes
    status_code: int = 200
    headers: Dict[str, str] = field(default_factory=dict)
    stored_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.stored_at = as_utc(self.stored_at)

    @classmethod
    def from_response(
        cls, key: str, body: bytes, status_code: int, headers: Mapping[str, str]
    ) -> "CacheEntry":
        return cls(
            key=key, body=body, status_code=status_code, headers=content_headers(headers)
        )

    @property
    def content_type(self) -> str | None:
        return self.headers.get("content-type")


class StoreBackend(ABC):
    """Persistence engine holding any number of named stores."""

    @abstractmethod
    def open_store(self, name: str) -> None:
        """Create ``name`` if missing; opening an existing store is a no-op."""

    @abstractmethod
    def get(self, name: str, key: str) -> CacheEntry | None: ...

    @abstractmethod
    def put(self, name: str, key: str, entry: CacheEntry) -> None: ...

    @abstractmethod
    def keys(self, name: str) -> Set[str]: ...

    @abstractmethod
    def delete_entry(self, name: str, key: str) -> bool: ...

    @abstractmethod
    def delete_store(self, name: str) -> bool: ...

    @abstractmethod
    def store_names(self) -> List[str]: ...

    def entries_by_age(self, name: str) -> List[str]:
        """Keys of ``name`` ordered from oldest to newest write."""

        entries = [self.get(name, key) for key in self.keys(name)]
        present = [entry for entry in entries if entry is not None]
        present.sort(key=lambda entry: (entry.stored_at, entry.key))
        return [entry.key for entry in present]

    def close(self) -> None:
        return None


class TileStore:
    """Handle on one named store."""

    def __init__(self, backend: StoreBackend, name: str) -> None:
        self.backend = backend
        self.name = name

    def __repr__(self) -> str:
        return f"TileStore({self.name!r})"

    def get(self, key: str) -> CacheEntry | None:
        return self.backend.get(self.name, key)

    def put(self, key: str, entry: CacheEntry) -> None:
        if entry.key != key:
            entry = CacheEntry(
                key=key,
                body=entry.body,
                status_code=entry.status_code,
                headers=dict(entry.headers),
                stored_at=entry.stored_at,
            )
        self.backend.put(self.name, key, entry)

    def keys(self) -> Set[str]:
        return self.backend.keys(self.name)

    def delete(self, key: str) -> bool:
        return self.backend.delete_entry(self.name, key)

    def count(self) -> int:
        return len(self.keys())


def open_store(backend: StoreBackend, role: StoreRole, generation: str, prefix: str) -> TileStore:
    name = store_name(role, generation, prefix)
    backend.open_store(name)
    return TileStore(backend, name)


def evict_oldest(store: TileStore, max_entries: int) -> int:
    """Drop the oldest entries until ``store`` holds at most ``max_entries``."""

    if max_entries <= 0:
        return 0
    ordered = store.backend.entries_by_age(store.name)
    excess = len(ordered) - max_entries
    if excess <= 0:
        return 0

    removed = 0
    for key in ordered[:excess]:
        if store.delete(key):
            removed += 1
    logger.info("Evicted %d entries from %s (limit %d)", removed, store.name, max_entries)
    return removed


class MemoryStoreBackend(StoreBackend):
    """Process-local backend; contents vanish with the process."""

    def __init__(self) -> None:
        self._stores: Dict[str, Dict[str, CacheEntry]] = {}

    def open_store(self, name: str) -> None:
        self._stores.setdefault(name, {})

    def get(self, name: str, key: str) -> CacheEntry | None:
        return self._stores.get(name, {}).get(key)

    def put(self, name: str, key: str, entry: CacheEntry) -> None:
        self._stores.setdefault(name, {})[key] = entry

    def keys(self, name: str) -> Set[str]:
        return set(self._stores.get(name, {}))

    def delete_entry(self, name: str, key: str) -> bool:
        return self._stores.get(name, {}).pop(key, None) is not None

    def delete_store(self, name: str) -> bool:
        return self._stores.pop(name, None) is not None

    def store_names(self) -> List[str]:
        return sorted(self._stores)


class DisabledStoreBackend(StoreBackend):
    """Backend for hosts without usable persistent storage."""

    def __init__(self, reason: str = "persistent storage is disabled") -> None:
        self.reason = reason

    def _unavailable(self) -> StoreUnavailable:
        return StoreUnavailable(self.reason)

    def open_store(self, name: str) -> None:
        raise self._unavailable()

    def get(self, name: str, key: str) -> CacheEntry | None:
        raise self._unavailable()

    def put(self, name: str, key: str, entry: CacheEntry) -> None:
        raise self._unavailable()

    def keys(self, name: str) -> Set[str]:
        raise self._unavailable()

    def delete_entry(self, name: str, key: str) -> bool:
        raise self._unavailable()

    def delete_store(self, name: str) -> bool:
        raise self._unavailable()

    def store_names(self) -> List[str]:
        raise self._unavailable()


def create_backend(settings: "Settings") -> StoreBackend:
    """Instantiate the backend selected by ``settings.store_backend``."""

    if settings.store_backend == "memory":
        return MemoryStoreBackend()
    if settings.store_backend == "disabled":
        return DisabledStoreBackend()
    if settings.store_backend == "file":
        from .file_store import FileStoreBackend

        return FileStoreBackend(settings.file_store_dir)

    from ..database import create_db_engine
    from .sql_store import SQLStoreBackend

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    try:
        return SQLStoreBackend(create_db_engine(settings.resolved_database_url))
    except StoreUnavailable as exc:
        logger.warning("Tile store unavailable, continuing network-only: %s", exc)
        return DisabledStoreBackend(str(exc))
