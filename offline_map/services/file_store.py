from __future__ import annotations

import hashlib
import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Set

from .store import CacheEntry, StoreBackend, StoreUnavailable, as_utc, utc_now


class FileStoreBackend(StoreBackend):
    """On-disk store: one directory per store, one blob plus JSON sidecar per key."""

    def __init__(self, root: Path) -> None:
        self.root = root
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable(f"cannot create tile store directory {root}: {exc}") from exc

    def open_store(self, name: str) -> None:
        try:
            self._store_dir(name).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def get(self, name: str, key: str) -> CacheEntry | None:
        blob_path = self._path(name, key, ensure_parent=False)
        metadata = self._read_metadata(blob_path)
        if metadata is None or not blob_path.exists():
            return None
        try:
            body = blob_path.read_bytes()
        except OSError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return CacheEntry(
            key=key,
            body=body,
            status_code=int(metadata.get("status_code") or 200),
            headers={str(k): str(v) for k, v in (metadata.get("headers") or {}).items()},
            stored_at=_parse_timestamp(metadata.get("stored_at")),
        )

    def put(self, name: str, key: str, entry: CacheEntry) -> None:
        try:
            blob_path = self._path(name, key, ensure_parent=True)
            blob_path.write_bytes(entry.body)
            self._write_metadata(
                blob_path,
                {
                    "key": key,
                    "status_code": entry.status_code,
                    "headers": entry.headers,
                    "stored_at": entry.stored_at.isoformat(),
                },
            )
        except OSError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def keys(self, name: str) -> Set[str]:
        store_dir = self._store_dir(name)
        if not store_dir.exists():
            return set()
        found: Set[str] = set()
        for metadata_path in store_dir.glob("*/*/*.json"):
            metadata = self._load_json(metadata_path)
            key = metadata.get("key") if metadata else None
            if key:
                found.add(str(key))
        return found

    def delete_entry(self, name: str, key: str) -> bool:
        blob_path = self._path(name, key, ensure_parent=False)
        metadata_path = self._metadata_path(blob_path)
        if not metadata_path.exists():
            return False
        try:
            metadata_path.unlink()
            blob_path.unlink(missing_ok=True)
        except OSError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return True

    def delete_store(self, name: str) -> bool:
        store_dir = self._store_dir(name)
        if not store_dir.exists():
            return False
        try:
            shutil.rmtree(store_dir)
        except OSError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return True

    def store_names(self) -> List[str]:
        return sorted(entry.name for entry in self.root.iterdir() if entry.is_dir())

    def _store_dir(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in {".", ".."}:
            raise ValueError(f"Invalid store name: {name!r}")
        return self.root / name

    def _path(self, name: str, key: str, *, ensure_parent: bool) -> Path:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        directory = self._store_dir(name) / digest[:2] / digest[2:4]
        if ensure_parent:
            directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{digest}.bin"

    def _metadata_path(self, blob_path: Path) -> Path:
        return blob_path.with_suffix(".json")

    def _read_metadata(self, blob_path: Path) -> Dict[str, Any] | None:
        return self._load_json(self._metadata_path(blob_path))

    def _write_metadata(self, blob_path: Path, metadata: Dict[str, Any]) -> None:
        self._metadata_path(blob_path).write_text(json.dumps(metadata, sort_keys=True))

    @staticmethod
    def _load_json(path: Path) -> Dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text())
        except (json.JSONDecodeError, OSError):
            return None
        return payload if isinstance(payload, dict) else None


def _parse_timestamp(value: object) -> datetime:
    if isinstance(value, str):
        try:
            return as_utc(datetime.fromisoformat(value))
        except ValueError:
            pass
    return utc_now()
