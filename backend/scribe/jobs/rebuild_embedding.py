"""Rebuild or resume the note embedding index.

The rebuild walks every note that is not in the recycle bin, in ascending id
order, and embeds its text and its non-image attachments. Progress is
checkpointed to the progress store after every note under
``rebuild_embedding_progress``:

- ``processed_note_ids``: notes with at least one successful embedding. A
  note in this set is never embedded again by the same run or by a resumed
  run, which makes redelivered jobs safe.
- ``failed_note_ids``: notes where an embedding call still failed after all
  retry attempts. They stay out of ``processed_note_ids`` until
  :meth:`RebuildEmbeddingTask.retry_failed_notes` clears them.
- ``skipped_note_ids``: notes with nothing to embed (no text, images only).

Stopping is cooperative. :meth:`RebuildEmbeddingTask.stop_rebuild` cancels the
live run's token and persists ``is_running=False``; the loop notices the
token before the next note and writes a final stopped snapshot. A queued job
that finds ``is_running=False`` returns without doing anything.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import unquote

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from scribe.config import Settings
from scribe.jobs.base import BaseTask
from scribe.jobs.runs import CancellationToken, RunRegistry
from scribe.services.embedding import EmbeddingService, UpsertResult
from scribe.services.notes import AttachmentRecord, NoteRecord, NoteStore
from scribe.services.notifications import NotificationService
from scribe.services.progress import ProgressStore
from scribe.services.queue import DurableQueue, JobRecord

logger = logging.getLogger(__name__)

REBUILD_EMBEDDING_TASK_NAME = "rebuildEmbedding"
PROGRESS_CACHE_KEY = "rebuild_embedding_progress"
PROGRESS_SCHEMA_VERSION = 1

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".svg")
PREVIEW_CHARS = 30


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_image(file_path: str) -> bool:
    return bool(file_path) and file_path.lower().endswith(IMAGE_EXTENSIONS)


def compute_percentage(current: int, total: int) -> int:
    """floor(current / total * 100), capped at 100. An empty run counts as done."""
    if total <= 0:
        return 100
    return min(100, current * 100 // total)


class ResultType(str, Enum):
    SUCCESS = "success"
    SKIP = "skip"
    ERROR = "error"


class _SnapshotModel(BaseModel):
    # Snapshots written by older releases use camelCase keys
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ResultRecord(_SnapshotModel):
    type: ResultType
    content: str = ""
    error: str | None = None
    note_id: int | None = None
    timestamp: datetime = Field(default_factory=_now)


class RebuildProgress(_SnapshotModel):
    """Persisted state of the embedding rebuild."""

    schema_version: int = PROGRESS_SCHEMA_VERSION
    current: int = 0
    total: int = 0
    percentage: int = 0
    is_running: bool = False
    results: list[ResultRecord] = Field(default_factory=list)
    processed_note_ids: list[int] = Field(default_factory=list)
    failed_note_ids: list[int] = Field(default_factory=list)
    skipped_note_ids: list[int] = Field(default_factory=list)
    last_processed_id: int | None = None
    retry_count: int = 0
    start_time: datetime = Field(default_factory=_now)
    last_update: datetime = Field(default_factory=_now)
    is_incremental: bool = False


@dataclass(slots=True)
class _NoteOutcome:
    results: list[ResultRecord] = field(default_factory=list)
    succeeded: bool = False
    failed: bool = False
    embeddable: bool = False


@dataclass(slots=True)
class _RunState:
    """Working copy of the snapshot while a run is in progress."""

    base: RebuildProgress
    total: int
    current: int
    processed: set[int]
    failed: set[int]
    skipped: set[int]
    results: deque[ResultRecord]
    last_processed_id: int | None

    @classmethod
    def from_progress(cls, progress: RebuildProgress, results_limit: int) -> _RunState:
        return cls(
            base=progress,
            total=progress.total,
            current=progress.current,
            processed=set(progress.processed_note_ids),
            failed=set(progress.failed_note_ids),
            skipped=set(progress.skipped_note_ids),
            results=deque(progress.results, maxlen=results_limit),
            last_processed_id=progress.last_processed_id,
        )

    def reset(self) -> None:
        self.total = 0
        self.current = 0
        self.processed.clear()
        self.failed.clear()
        self.skipped.clear()
        self.last_processed_id = None

    def snapshot(self, is_running: bool, percentage: int | None = None) -> RebuildProgress:
        return self.base.model_copy(
            update={
                "schema_version": PROGRESS_SCHEMA_VERSION,
                "current": self.current,
                "total": self.total,
                "percentage": (
                    compute_percentage(self.current, self.total)
                    if percentage is None
                    else percentage
                ),
                "is_running": is_running,
                "results": list(self.results),
                "processed_note_ids": sorted(self.processed),
                "failed_note_ids": sorted(self.failed),
                "skipped_note_ids": sorted(self.skipped),
                "last_processed_id": self.last_processed_id,
                "last_update": _now(),
            }
        )


class RebuildEmbeddingTask(BaseTask):
    """Re-embed all notes, with stop, resume and targeted retry of failures."""

    task_name = REBUILD_EMBEDDING_TASK_NAME
    default_schedule = None  # on demand only
    progress_key = PROGRESS_CACHE_KEY

    def __init__(
        self,
        queue: DurableQueue,
        settings: Settings,
        progress_store: ProgressStore,
        note_store: NoteStore,
        embedding_service: EmbeddingService,
        notifications: NotificationService,
        runs: RunRegistry,
    ) -> None:
        super().__init__(queue, settings)
        self._progress = progress_store
        self._notes = note_store
        self._embedding = embedding_service
        self._notifications = notifications
        self._runs = runs

    # ------------------------------------------------------------------
    # Control operations
    # ------------------------------------------------------------------

    def get_progress(self) -> RebuildProgress | None:
        raw = self._progress.get(PROGRESS_CACHE_KEY)
        if raw is None:
            return None
        try:
            return RebuildProgress.model_validate(raw)
        except ValidationError:
            logger.warning("[%s] Ignoring unreadable progress snapshot", self.task_name, exc_info=True)
            return None

    def get_failed_notes(self) -> list[int]:
        progress = self.get_progress()
        return list(progress.failed_note_ids) if progress else []

    def is_live(self, progress: RebuildProgress | None = None) -> bool:
        """Whether a run is marked running and still has a queued or active job."""
        if progress is None:
            progress = self.get_progress()
        if progress is None or not progress.is_running:
            return False
        return self.has_pending_job()

    def force_rebuild(self, force: bool = True, incremental: bool = False) -> bool:
        """Start a rebuild, optionally preempting the one already running.

        With ``incremental`` and earlier progress, the new run keeps the
        processed ids and only embeds what is left. Returns False if nothing
        was started.
        """
        try:
            existing = self.get_progress()

            if existing is not None and existing.is_running:
                if force:
                    logger.info("[%s] Force stopping", self.task_name)
                    self.stop_rebuild()
                    timeout = self._settings.rebuild_stop_timeout_seconds
                    if not self._queue.wait_for_idle(self.task_name, timeout):
                        logger.warning(
                            "[%s] Running rebuild did not exit within %.0fs, not restarting",
                            self.task_name,
                            timeout,
                        )
                        return False
                    # The stopped run may have saved more progress while we waited
                    existing = self.get_progress()
                elif self.has_pending_job():
                    logger.info("[%s] Rebuild already running", self.task_name)
                    return False

            if incremental and existing is not None:
                initial = existing.model_copy(
                    update={
                        "is_running": True,
                        "retry_count": existing.retry_count + 1,
                        "last_update": _now(),
                        "is_incremental": True,
                    }
                )
            else:
                initial = RebuildProgress(is_running=True)

            self._save(initial)
            job_id = self.trigger_now({"force": force, "incremental": incremental})
            if job_id is None:
                logger.info("[%s] Rebuild coalesced with a queued run", self.task_name)
            return True
        except Exception:
            logger.exception("[%s] Force rebuild failed", self.task_name)
            return False

    def stop_rebuild(self) -> bool:
        """Request the running rebuild to stop and mark it stopped right away."""
        try:
            self._runs.cancel(self.task_name)
            progress = self.get_progress()
            if progress is not None:
                self._save(progress.model_copy(update={"is_running": False, "last_update": _now()}))
            return True
        except Exception:
            logger.exception("[%s] Stop failed", self.task_name)
            return False

    def resume_rebuild(self) -> bool:
        return self.force_rebuild(force=True, incremental=True)

    def retry_failed_notes(self) -> bool:
        """Queue an incremental run that embeds the failed notes again."""
        try:
            progress = self.get_progress()
            if progress is None:
                return False
            if self.is_live(progress):
                logger.info("[%s] Rebuild is running, retry not started", self.task_name)
                return False

            failed = set(progress.failed_note_ids)
            processed = [i for i in progress.processed_note_ids if i not in failed]
            current = max(0, progress.current - (len(progress.processed_note_ids) - len(processed)))

            self._save(
                progress.model_copy(
                    update={
                        "processed_note_ids": processed,
                        "failed_note_ids": [],
                        "current": current,
                        "percentage": compute_percentage(current, progress.total),
                        "is_running": True,
                        "is_incremental": True,
                        "last_update": _now(),
                    }
                )
            )
            self.trigger_now({"retry": True})
            logger.info("[%s] Retrying %d failed note(s)", self.task_name, len(failed))
            return True
        except Exception:
            logger.exception("[%s] Retry failed", self.task_name)
            return False

    def _save(self, progress: RebuildProgress) -> None:
        result = self._progress.save(PROGRESS_CACHE_KEY, progress.model_dump(mode="json"))
        if not result.ok:
            logger.warning("[%s] Progress not saved: %s", self.task_name, result.error)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run_task(self, job: JobRecord | None = None) -> dict[str, Any]:
        progress = self.get_progress() or RebuildProgress(is_running=True)
        if not progress.is_running:
            logger.info("[%s] Rebuild is not marked running, nothing to do", self.task_name)
            return progress.model_dump(mode="json")

        handle = self._runs.begin(self.task_name)
        state = _RunState.from_progress(progress, self._settings.rebuild_results_limit)
        try:
            return await self._rebuild(state, handle.token)
        except Exception as exc:
            logger.exception("[%s] Rebuild failed", self.task_name)
            state.results.append(
                ResultRecord(type=ResultType.ERROR, content="Task failed", error=str(exc))
            )
            self._save(state.snapshot(is_running=False))
            self._notifications.notify("embedding-rebuild-failed", str(exc) or "embedding-rebuild-failed")
            raise
        finally:
            self._runs.end(handle)

    async def _rebuild(self, state: _RunState, token: CancellationToken) -> dict[str, Any]:
        incremental = state.base.is_incremental
        if not incremental:
            await self._embedding.rebuild_index(is_delete=True)
            # The index is empty now, so every note needs embedding again
            state.reset()

        notes = self._notes.list_for_reindex(state.processed if incremental else None)
        if incremental:
            state.total = state.total or len(notes) + len(state.processed)
            state.current = len(state.processed)
        else:
            state.total = len(notes)

        logger.info(
            "[%s] Processing %d notes (%d already done, incremental=%s)",
            self.task_name,
            len(notes),
            len(state.processed),
            incremental,
        )

        batch_size = max(1, self._settings.rebuild_batch_size)
        for start in range(0, len(notes), batch_size):
            if token.cancelled:
                break
            for note in notes[start:start + batch_size]:
                if token.cancelled:
                    break
                if note.id in state.processed:
                    continue
                logger.debug(
                    "[%s] Processing note %d, %d/%d",
                    self.task_name,
                    note.id,
                    state.current,
                    state.total,
                )
                self._apply(state, note, await self._process_note_safely(note))
                self._save(state.snapshot(is_running=not token.cancelled))

        if token.cancelled:
            self._save(state.snapshot(is_running=False))
            logger.info(
                "[%s] Rebuild stopped at %d/%d", self.task_name, state.current, state.total
            )
            return {"stopped": True, "current": state.current, "total": state.total}

        final = state.snapshot(is_running=False, percentage=100)
        self._save(final)
        logger.info(
            "[%s] Rebuild complete: %d processed, %d failed, %d skipped",
            self.task_name,
            len(state.processed),
            len(state.failed),
            len(state.skipped),
        )
        self._notifications.notify("embedding-rebuild-complete", "embedding-rebuild-complete")
        return final.model_dump(mode="json")

    @staticmethod
    def _apply(state: _RunState, note: NoteRecord, outcome: _NoteOutcome) -> None:
        state.results.extend(outcome.results)
        state.last_processed_id = note.id
        state.failed.discard(note.id)
        if outcome.failed:
            state.failed.add(note.id)
        if outcome.succeeded:
            state.processed.add(note.id)
            state.skipped.discard(note.id)
            state.current += 1
        elif not outcome.failed and not outcome.embeddable:
            state.skipped.add(note.id)

    async def _process_note_safely(self, note: NoteRecord) -> _NoteOutcome:
        try:
            return await self._process_note(note)
        except Exception as exc:
            logger.exception("[%s] Error processing note %d", self.task_name, note.id)
            return _NoteOutcome(
                results=[
                    ResultRecord(
                        type=ResultType.ERROR,
                        content=note.content[:PREVIEW_CHARS],
                        error=str(exc) or exc.__class__.__name__,
                        note_id=note.id,
                    )
                ],
                failed=True,
                embeddable=True,
            )

    async def _process_note(self, note: NoteRecord) -> _NoteOutcome:
        outcome = _NoteOutcome()

        if note.content and note.content.strip():
            outcome.embeddable = True
            result = await self._with_retry(
                f"note {note.id}",
                lambda: self._embedding.upsert_note(
                    note.id, note.content, note.created_at, note.updated_at
                ),
            )
            preview = note.content[:PREVIEW_CHARS]
            if result.ok:
                outcome.succeeded = True
                outcome.results.append(
                    ResultRecord(type=ResultType.SUCCESS, content=preview, note_id=note.id)
                )
            else:
                outcome.failed = True
                outcome.results.append(
                    ResultRecord(
                        type=ResultType.ERROR, content=preview, error=result.error, note_id=note.id
                    )
                )

        for attachment in note.attachments:
            await self._process_attachment(note, attachment, outcome)

        return outcome

    async def _process_attachment(
        self, note: NoteRecord, attachment: AttachmentRecord, outcome: _NoteOutcome
    ) -> None:
        if is_image(attachment.path):
            outcome.results.append(
                ResultRecord(
                    type=ResultType.SKIP,
                    content=attachment.path,
                    error="image not supported",
                    note_id=note.id,
                )
            )
            return

        result = await self._with_retry(
            f"attachment {attachment.path}",
            lambda: self._embedding.upsert_attachment(note.id, attachment.path, note.updated_at),
        )
        display = unquote(attachment.path)
        if result.skipped:
            outcome.results.append(
                ResultRecord(
                    type=ResultType.SKIP, content=display, error=result.error, note_id=note.id
                )
            )
            return

        outcome.embeddable = True
        if result.ok:
            outcome.succeeded = True
            outcome.results.append(
                ResultRecord(type=ResultType.SUCCESS, content=display, note_id=note.id)
            )
        else:
            outcome.failed = True
            outcome.results.append(
                ResultRecord(
                    type=ResultType.ERROR, content=display, error=result.error, note_id=note.id
                )
            )

    async def _with_retry(
        self, label: str, call: Callable[[], Awaitable[UpsertResult]]
    ) -> UpsertResult:
        """Run an embedding call with linear backoff between attempts."""
        attempts = max(1, self._settings.rebuild_max_attempts)
        backoff = self._settings.rebuild_retry_backoff_seconds
        error = "Unknown error"
        for attempt in range(1, attempts + 1):
            try:
                result = await call()
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
            else:
                if result.ok or result.skipped:
                    return result
                error = result.error or "Unknown error"
            if attempt < attempts:
                logger.warning(
                    "[%s] Embedding %s failed (attempt %d/%d): %s",
                    self.task_name,
                    label,
                    attempt,
                    attempts,
                    error,
                )
                await asyncio.sleep(backoff * attempt)
        return UpsertResult(ok=False, error=error)
