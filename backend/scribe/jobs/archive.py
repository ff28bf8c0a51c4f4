from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from scribe.config import Settings
from scribe.jobs.base import BaseTask
from scribe.services.notes import NoteStore
from scribe.services.queue import DurableQueue, JobRecord

logger = logging.getLogger(__name__)

ARCHIVE_TASK_NAME = "archiveNotes"


class ArchiveNotesTask(BaseTask):
    """Archive regular notes older than ``auto_archive_days``.

    Re-running is harmless: notes already archived are left alone.
    """

    task_name = ARCHIVE_TASK_NAME
    default_schedule = "0 0 * * *"

    def __init__(self, queue: DurableQueue, settings: Settings, note_store: NoteStore) -> None:
        super().__init__(queue, settings)
        self._notes = note_store

    async def run_task(self, job: JobRecord | None = None) -> dict[str, Any]:
        days = self._settings.auto_archive_days
        if job is not None and job.data.get("auto_archive_days"):
            days = int(job.data["auto_archive_days"])

        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        archived = self._notes.archive_older_than(cutoff)

        if archived == 0:
            logger.info("[%s] No notes to archive", self.task_name)
            return {"archived_count": 0, "message": "No notes to archive"}

        logger.info(
            "[%s] Archived %d note(s) created before %s",
            self.task_name,
            archived,
            cutoff.isoformat(),
        )
        return {
            "archived_count": archived,
            "auto_archive_days": days,
            "cutoff_date": cutoff.isoformat(),
        }
