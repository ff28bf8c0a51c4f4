from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy.engine import make_url

from scribe import __version__
from scribe.config import Settings
from scribe.jobs.base import BaseTask
from scribe.services.notes import NoteStore
from scribe.services.notifications import NotificationService
from scribe.services.queue import DurableQueue, JobRecord

logger = logging.getLogger(__name__)

BACKUP_TASK_NAME = "databaseBackup"
EXPORT_JSON_NAME = "bak.json"
ARCHIVE_NAME = "scribe_export.bko"
SQLITE_SNAPSHOT_NAME = "scribe.db"


def _sqlite_path(db_url: str) -> Path | None:
    """Return the database file of a SQLite URL, or None for other backends."""
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite" or url.database in (None, "", ":memory:"):
        return None
    return Path(url.database)


class DatabaseBackupTask(BaseTask):
    """Export notes to JSON and zip the data directory into one archive.

    The archive is written to the upload directory so it can be downloaded
    like any other file. A SQLite database is copied with the online backup
    API first; the live database files are left out of the archive.
    """

    task_name = BACKUP_TASK_NAME
    default_schedule = "0 0 * * *"

    def __init__(
        self,
        queue: DurableQueue,
        settings: Settings,
        note_store: NoteStore,
        notifications: NotificationService,
    ) -> None:
        super().__init__(queue, settings)
        self._notes = note_store
        self._notifications = notifications

    async def run_task(self, job: JobRecord | None = None) -> dict[str, Any]:
        settings = self._settings
        notes = self._notes.export_notes()
        export = {
            "notes": notes,
            "export_time": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
        }

        backup_dir = settings.backup_dir
        target = settings.upload_dir / ARCHIVE_NAME
        db_path = _sqlite_path(settings.db_url)

        def _write_export() -> None:
            backup_dir.mkdir(parents=True, exist_ok=True)
            (backup_dir / EXPORT_JSON_NAME).write_text(
                json.dumps(export, indent=2, default=str), encoding="utf-8"
            )

        await asyncio.to_thread(_write_export)
        if db_path is not None and db_path.exists():
            await asyncio.to_thread(self._snapshot_sqlite, db_path, backup_dir / SQLITE_SNAPSHOT_NAME)

        progress = await asyncio.to_thread(self._build_archive, settings.data_dir, target, db_path)
        logger.info(
            "[%s] Backup written to %s (%d notes, %d files)",
            self.task_name,
            target,
            len(notes),
            progress["total"],
        )

        self._notifications.notify("system-notification", "backup-success")

        return {
            "file_path": f"/api/file/{ARCHIVE_NAME}",
            "progress": progress,
            "notes_count": len(notes),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @staticmethod
    def _snapshot_sqlite(db_path: Path, snapshot_path: Path) -> None:
        src = sqlite3.connect(str(db_path))
        dst = sqlite3.connect(str(snapshot_path))
        try:
            src.backup(dst)
        finally:
            dst.close()
            src.close()

    @staticmethod
    def _build_archive(root: Path, target: Path, db_path: Path | None) -> dict[str, int]:
        target.parent.mkdir(parents=True, exist_ok=True)

        partial = target.with_name(target.name + ".partial")
        excluded = {target.resolve(), partial.resolve()}
        if db_path is not None:
            live = db_path.resolve()
            excluded.update({live, Path(f"{live}-wal"), Path(f"{live}-shm")})

        files = [
            path
            for path in sorted(root.rglob("*"))
            if path.is_file() and path.resolve() not in excluded
        ]

        processed = 0
        processed_bytes = 0
        # Renamed into place only once complete
        with zipfile.ZipFile(partial, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
            for path in files:
                archive.write(path, arcname=path.relative_to(root).as_posix())
                processed += 1
                processed_bytes += path.stat().st_size
        partial.replace(target)

        total = len(files)
        return {
            "processed": processed,
            "total": total,
            "processed_bytes": processed_bytes,
            "percent": processed * 100 // total if total else 100,
        }
