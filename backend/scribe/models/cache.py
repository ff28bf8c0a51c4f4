from __future__ import annotations

from datetime import datetime, timezone

from sqlmodel import Field, SQLModel


class CacheEntry(SQLModel, table=True):
    """Key/value row holding a JSON document (job progress, fetched lists)."""

    __tablename__ = "cache"

    id: int | None = Field(default=None, primary_key=True)
    key: str = Field(index=True, unique=True)
    value_json: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
