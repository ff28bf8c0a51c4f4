from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, create_engine, select

from scribe.models.cache import CacheEntry
from scribe.services.progress import ProgressStore


class TestProgressStore:
    def test_get_missing_key(self, progress_store: ProgressStore):
        assert progress_store.get("nothing") is None

    def test_save_then_get(self, progress_store: ProgressStore):
        result = progress_store.save("job", {"current": 3, "ids": [1, 2, 3]})
        assert result.ok is True
        assert result.error is None
        assert progress_store.get("job") == {"current": 3, "ids": [1, 2, 3]}

    def test_save_replaces_existing_row(self, progress_store: ProgressStore, engine):
        progress_store.save("job", {"current": 1})
        progress_store.save("job", {"current": 2})

        assert progress_store.get("job") == {"current": 2}
        with Session(engine) as session:
            rows = session.exec(select(CacheEntry).where(CacheEntry.key == "job")).all()
        assert len(rows) == 1

    def test_save_failure_is_returned_not_raised(self, progress_store: ProgressStore):
        circular: dict = {}
        circular["self"] = circular

        result = progress_store.save("job", circular)

        assert result.ok is False
        assert "Circular" in result.error
        assert progress_store.get("job") is None

    def test_unreadable_value_returns_none(self, progress_store: ProgressStore, engine):
        with Session(engine) as session:
            session.add(CacheEntry(key="job", value_json="{not json"))
            session.commit()

        assert progress_store.get("job") is None

    def test_delete(self, progress_store: ProgressStore):
        progress_store.save("job", [1])
        assert progress_store.delete("job") is True
        assert progress_store.delete("job") is False
        assert progress_store.get("job") is None

    def test_database_read_error_raises(self):
        # No tables were created on this engine
        store = ProgressStore(create_engine("sqlite://"))

        with pytest.raises(OperationalError):
            store.get("job")
