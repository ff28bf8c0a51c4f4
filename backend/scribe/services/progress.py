"""Key/value store for job progress snapshots and fetched lists.

Values are JSON documents kept in the ``cache`` table, one row per key.
Writes are best-effort: a failed save is logged and reported through
:class:`SaveResult` instead of raising, so a transient database error never
aborts a running job. Reads raise on database errors, since a missing
snapshot and an unreachable one call for different handling.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from scribe.models.cache import CacheEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SaveResult:
    ok: bool
    error: str | None = None


class ProgressStore:
    """Read and upsert JSON documents by key."""

    __slots__ = ("_engine",)

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get(self, key: str) -> Any | None:
        """Return the stored value, or None if missing or not valid JSON.

        Database errors propagate to the caller.
        """
        with Session(self._engine) as session:
            entry = session.exec(
                select(CacheEntry).where(CacheEntry.key == key)
            ).first()
            value_json = entry.value_json if entry is not None else None
        if value_json is None:
            return None
        try:
            return json.loads(value_json)
        except ValueError:
            logger.warning("Ignoring unreadable value for cache key %s", key, exc_info=True)
            return None

    def save(self, key: str, value: Any) -> SaveResult:
        """Create or replace the value stored under *key*."""
        try:
            value_json = json.dumps(value, default=str)
            with Session(self._engine) as session:
                entry = session.exec(
                    select(CacheEntry).where(CacheEntry.key == key)
                ).first()
                if entry is None:
                    entry = CacheEntry(key=key, value_json=value_json)
                else:
                    entry.value_json = value_json
                    entry.updated_at = datetime.now(timezone.utc)
                session.add(entry)
                session.commit()
            return SaveResult(ok=True)
        except Exception as exc:
            logger.warning("Failed to save cache key %s", key, exc_info=True)
            return SaveResult(ok=False, error=str(exc) or exc.__class__.__name__)

    def delete(self, key: str) -> bool:
        """Remove *key*. Returns False if it did not exist."""
        with Session(self._engine) as session:
            entry = session.exec(
                select(CacheEntry).where(CacheEntry.key == key)
            ).first()
            if entry is None:
                return False
            session.delete(entry)
            session.commit()
        return True
