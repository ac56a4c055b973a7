from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import Column, DateTime, LargeBinary
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheStoreRecord(SQLModel, table=True):
    name: str = Field(primary_key=True)
    role: Optional[str] = Field(default=None, index=True)
    generation: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class CacheEntryRecord(SQLModel, table=True):
    store_name: str = Field(primary_key=True, foreign_key="cachestorerecord.name")
    key: str = Field(primary_key=True)
    body: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    status_code: int = Field(default=200)
    headers_payload: str = Field(default="{}", description="JSON encoded content headers")
    stored_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )

    def headers(self) -> Dict[str, str]:
        try:
            payload = json.loads(self.headers_payload)
        except json.JSONDecodeError:
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(name): str(value) for name, value in payload.items()}
