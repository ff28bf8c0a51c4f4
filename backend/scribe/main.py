"""Standalone job runner process.

Wires the database, queue, services and tasks together, starts the queue's
worker threads and waits for SIGINT or SIGTERM.
"""

from __future__ import annotations

import logging
import signal
import threading
from dataclasses import dataclass

from qdrant_client import QdrantClient
from sqlalchemy.engine import Engine

from scribe.config import Settings, get_settings
from scribe.db import build_engine, create_db_and_tables
from scribe.jobs.archive import ArchiveNotesTask
from scribe.jobs.backup import DatabaseBackupTask
from scribe.jobs.rebuild_embedding import RebuildEmbeddingTask
from scribe.jobs.recommend import RecommendTask
from scribe.jobs.registry import JobRegistry
from scribe.jobs.runs import RunRegistry
from scribe.services.embedding import EmbeddingService
from scribe.services.notes import NoteStore
from scribe.services.notifications import NotificationService
from scribe.services.progress import ProgressStore
from scribe.services.queue import DurableQueue

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


@dataclass
class JobRuntime:
    settings: Settings
    engine: Engine
    queue: DurableQueue
    qdrant_client: QdrantClient
    embedding_service: EmbeddingService
    registry: JobRegistry
    rebuild: RebuildEmbeddingTask

    def start(self, background: bool = True) -> None:
        settings = self.settings
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        settings.upload_dir.mkdir(parents=True, exist_ok=True)
        settings.backup_dir.mkdir(parents=True, exist_ok=True)
        create_db_and_tables(self.engine)

        try:
            self.embedding_service.ensure_collection()
        except Exception:
            logger.warning(
                "Qdrant is not reachable, embedding rebuilds will fail until it is",
                exc_info=True,
            )

        self.queue.start(background=background)
        failed = self.registry.initialize_all()
        if failed:
            logger.warning("Tasks not initialized: %s", ", ".join(failed))

        self._ensure_default_schedules(skip=set(failed))
        logger.info("Job runtime started with tasks: %s", ", ".join(self.registry.task_names))

    def _ensure_default_schedules(self, skip: set[str]) -> None:
        """Schedule tasks that have a default cron and no schedule yet."""
        registered = {q.name for q in self.queue.get_queues()}
        for name in self.registry.task_names:
            task = self.registry.get(name)
            if name in skip or task is None or not task.default_schedule:
                continue
            if name not in registered:
                # Task chose not to register, e.g. nothing to fetch
                continue
            if not task.has_schedule():
                task.start(task.default_schedule, immediate=False)

    def stop(self) -> None:
        try:
            if self.rebuild.is_live():
                # Leaves a stopped snapshot that resume_rebuild can pick up
                self.rebuild.stop_rebuild()
        except Exception:
            logger.exception("Failed to check for a live rebuild")
        self.queue.stop(graceful=True, timeout=self.settings.rebuild_stop_timeout_seconds)
        self.qdrant_client.close()
        self.engine.dispose()
        logger.info("Job runtime stopped")


def build_runtime(settings: Settings) -> JobRuntime:
    engine = build_engine(settings.db_url)
    queue = DurableQueue(engine, settings)
    progress_store = ProgressStore(engine)
    note_store = NoteStore(engine)
    notifications = NotificationService(engine)

    qdrant_client = QdrantClient(url=settings.qdrant_url)
    embedding_service = EmbeddingService(
        ollama_url=settings.ollama_url,
        qdrant_client=qdrant_client,
        upload_dir=settings.upload_dir,
        model=settings.embedding_model,
        fallback_url=settings.fallback_embedding_url,
        fallback_api_key=settings.fallback_embedding_api_key,
        fallback_embedding_model=settings.fallback_embedding_model,
    )

    rebuild = RebuildEmbeddingTask(
        queue,
        settings,
        progress_store=progress_store,
        note_store=note_store,
        embedding_service=embedding_service,
        notifications=notifications,
        runs=RunRegistry(),
    )
    tasks = [
        ArchiveNotesTask(queue, settings, note_store),
        DatabaseBackupTask(queue, settings, note_store, notifications),
        RecommendTask(queue, settings, note_store, progress_store),
        rebuild,
    ]
    return JobRuntime(
        settings=settings,
        engine=engine,
        queue=queue,
        qdrant_client=qdrant_client,
        embedding_service=embedding_service,
        registry=JobRegistry(queue, progress_store, tasks),
        rebuild=rebuild,
    )


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)

    runtime = build_runtime(settings)
    stop_event = threading.Event()

    def _request_stop(signum, frame) -> None:
        logger.info("Received signal %d, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    runtime.start()
    try:
        stop_event.wait()
    finally:
        runtime.stop()


if __name__ == "__main__":
    main()
