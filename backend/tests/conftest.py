from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

# Set test environment BEFORE importing scribe modules so get_settings()
# never falls back to the production paths.
_test_tmp = tempfile.mkdtemp(prefix="scribe-test-")
os.environ.setdefault("DATA_DIR", os.path.join(_test_tmp, "data"))
os.environ.setdefault("UPLOAD_DIR", os.path.join(_test_tmp, "data", "files"))
os.environ.setdefault("BACKUP_DIR", os.path.join(_test_tmp, "data", "backup"))
os.environ.setdefault("DB_URL", "sqlite://")

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import scribe.models  # noqa: F401  (registers SQLModel tables)
from scribe.config import Settings
from scribe.models.note import Attachment, Note, NoteType
from scribe.services.embedding import EmbeddingService, UpsertResult
from scribe.services.notes import NoteStore
from scribe.services.notifications import NotificationService
from scribe.services.progress import ProgressStore
from scribe.services.queue import DurableQueue


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database.
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


# ── Settings and services ─────────────────────────────────────────────


def _make_settings(tmp_path, **overrides) -> Settings:
    defaults = {
        "db_url": "sqlite://",
        "data_dir": tmp_path / "data",
        "upload_dir": tmp_path / "data" / "files",
        "backup_dir": tmp_path / "data" / "backup",
        "queue_retry_base_delay_seconds": 0,
        "rebuild_retry_backoff_seconds": 0,
        "rebuild_stop_timeout_seconds": 0.2,
        "recommend_batch_pause_seconds": 0,
    }
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


@pytest.fixture(name="settings")
def settings_fixture(tmp_path) -> Settings:
    """Settings with temp directories and no retry sleeps."""
    return _make_settings(tmp_path)


@pytest.fixture(name="queue")
def queue_fixture(engine, settings):
    """A started queue without background threads; drive it with tick()/drain()."""
    queue = DurableQueue(engine, settings)
    queue.start(background=False)
    yield queue
    queue.stop()


@pytest.fixture(name="progress_store")
def progress_store_fixture(engine) -> ProgressStore:
    return ProgressStore(engine)


@pytest.fixture(name="note_store")
def note_store_fixture(engine) -> NoteStore:
    return NoteStore(engine)


@pytest.fixture(name="notifications")
def notifications_fixture(engine) -> NotificationService:
    return NotificationService(engine)


@pytest.fixture(name="mock_embedding")
def mock_embedding_fixture() -> MagicMock:
    """EmbeddingService mock where every upsert succeeds."""
    service = MagicMock(spec=EmbeddingService)
    service.upsert_note = AsyncMock(return_value=UpsertResult(ok=True, chunks_stored=1))
    service.upsert_attachment = AsyncMock(return_value=UpsertResult(ok=True, chunks_stored=1))
    service.rebuild_index = AsyncMock()
    return service


# ── Data factories ────────────────────────────────────────────────────


@pytest.fixture(name="make_notes")
def make_notes_fixture(session):
    """Insert notes and return their ids in ascending order."""

    def _make(
        count: int,
        *,
        content: str = "note body {i}",
        age_days: int = 0,
        note_type: NoteType = NoteType.NOTE,
        **fields,
    ) -> list[int]:
        created_at = datetime.now(timezone.utc) - timedelta(days=age_days)
        notes = [
            Note(
                content=content.format(i=i),
                type=note_type.value,
                created_at=created_at,
                updated_at=created_at,
                **fields,
            )
            for i in range(count)
        ]
        session.add_all(notes)
        session.commit()
        return sorted(note.id for note in notes)

    return _make


@pytest.fixture(name="add_attachment")
def add_attachment_fixture(session):
    def _add(note_id: int, path: str) -> None:
        session.add(Attachment(note_id=note_id, path=path, name=path.rsplit("/", 1)[-1]))
        session.commit()

    return _add


@pytest.fixture(name="make_settings")
def make_settings_fixture(tmp_path):
    """Build Settings with test defaults plus overrides."""

    def _make(**overrides) -> Settings:
        return _make_settings(tmp_path, **overrides)

    return _make
