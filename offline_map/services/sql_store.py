from __future__ import annotations

import json
from typing import List, Set

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import delete, select

from ..database import init_db, session_scope
from ..models import CacheEntryRecord, CacheStoreRecord
from .store import CacheEntry, StoreBackend, StoreUnavailable, as_utc, parse_store_name


class SQLStoreBackend(StoreBackend):
    """Durable store kept in a relational database (SQLite by default)."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        try:
            init_db(engine)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"cannot initialise tile database: {exc}") from exc

    def open_store(self, name: str) -> None:
        try:
            with session_scope(self.engine) as session:
                if session.get(CacheStoreRecord, name) is None:
                    session.add(_store_record(name))
                    session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def get(self, name: str, key: str) -> CacheEntry | None:
        try:
            with session_scope(self.engine) as session:
                record = session.get(CacheEntryRecord, (name, key))
                if record is None:
                    return None
                return CacheEntry(
                    key=record.key,
                    body=record.body,
                    status_code=record.status_code,
                    headers=record.headers(),
                    stored_at=as_utc(record.stored_at),
                )
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def put(self, name: str, key: str, entry: CacheEntry) -> None:
        headers_payload = json.dumps(entry.headers, sort_keys=True)
        try:
            with session_scope(self.engine) as session:
                if session.get(CacheStoreRecord, name) is None:
                    session.add(_store_record(name))
                record = session.get(CacheEntryRecord, (name, key))
                if record is None:
                    record = CacheEntryRecord(
                        store_name=name,
                        key=key,
                        body=entry.body,
                        status_code=entry.status_code,
                        headers_payload=headers_payload,
                        stored_at=entry.stored_at,
                    )
                    session.add(record)
                else:
                    record.body = entry.body
                    record.status_code = entry.status_code
                    record.headers_payload = headers_payload
                    record.stored_at = entry.stored_at
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def keys(self, name: str) -> Set[str]:
        try:
            with session_scope(self.engine) as session:
                statement = select(CacheEntryRecord.key).where(CacheEntryRecord.store_name == name)
                return set(session.exec(statement).all())
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def entries_by_age(self, name: str) -> List[str]:
        try:
            with session_scope(self.engine) as session:
                statement = (
                    select(CacheEntryRecord.key)
                    .where(CacheEntryRecord.store_name == name)
                    .order_by(CacheEntryRecord.stored_at, CacheEntryRecord.key)
                )
                return list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def delete_entry(self, name: str, key: str) -> bool:
        try:
            with session_scope(self.engine) as session:
                record = session.get(CacheEntryRecord, (name, key))
                if record is None:
                    return False
                session.delete(record)
                session.commit()
                return True
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def delete_store(self, name: str) -> bool:
        try:
            with session_scope(self.engine) as session:
                store = session.get(CacheStoreRecord, name)
                session.exec(delete(CacheEntryRecord).where(CacheEntryRecord.store_name == name))
                if store is not None:
                    session.delete(store)
                session.commit()
                return store is not None
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def store_names(self) -> List[str]:
        try:
            with session_scope(self.engine) as session:
                statement = select(CacheStoreRecord.name).order_by(CacheStoreRecord.name)
                return list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def close(self) -> None:
        self.engine.dispose()


def _store_record(name: str) -> CacheStoreRecord:
    parsed = parse_store_name(name)
    if parsed is None:
        return CacheStoreRecord(name=name)
    role, generation = parsed
    return CacheStoreRecord(name=name, role=role.value, generation=generation)
