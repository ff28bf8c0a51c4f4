"""Common lifecycle for tasks that run on the durable job queue.

A task owns one queue, named after the task. :meth:`BaseTask.initialize`
creates the queue and registers the worker; the remaining controls manage the
task's cron schedule and enqueue on-demand runs. Every run is enqueued with a
singleton key equal to the task name, so a trigger arriving while a run is
still queued or active is coalesced into it.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar

from scribe.config import Settings
from scribe.services.queue import DurableQueue, JobRecord, QueueUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TaskStatus:
    """Cheap liveness view of a task, read from queue metadata."""

    name: str
    schedule: str | None
    is_running: bool  # a job is queued, deferred or active
    active_jobs: int
    next_run: datetime | None
    last_run: datetime | None


class BaseTask(ABC):
    """Base class for queue-backed background tasks."""

    task_name: ClassVar[str]
    default_schedule: ClassVar[str | None] = None
    progress_key: ClassVar[str | None] = None

    def __init__(self, queue: DurableQueue, settings: Settings) -> None:
        self._queue = queue
        self._settings = settings

    @abstractmethod
    async def run_task(self, job: JobRecord | None = None) -> Any:
        """Do one run of the task. Must be safe to run again for the same job."""

    def initialize(self) -> None:
        """Create the task's queue and register its worker."""
        self._require_queue()
        try:
            self._queue.create_queue(self.task_name)
            self._queue.work(self.task_name, self._handle, batch_size=1)
        except Exception:
            logger.exception("[%s] Worker registration failed", self.task_name)
            raise
        logger.info("[%s] Worker registered", self.task_name)

    def initialize_task(self) -> bool:
        """Startup hook. Returns False if the task chose not to register."""
        self.initialize()
        return True

    async def _handle(self, jobs: list[JobRecord]) -> Any:
        output = None
        for job in jobs:
            logger.info("[%s] Job started: %s", self.task_name, job.id)
            try:
                output = await self.run_task(job)
            except Exception as exc:
                logger.error("[%s] Job %s failed: %s", self.task_name, job.id, exc)
                raise
            logger.info("[%s] Job completed: %s", self.task_name, job.id)
        return output

    def start(self, cron: str | None = None, immediate: bool = True) -> bool:
        """Register the recurring schedule and optionally enqueue a run now."""
        self._require_queue()
        cron = cron or self.default_schedule
        if not cron:
            raise ValueError(f"No schedule given for {self.task_name}")
        self._queue.schedule(self.task_name, cron, tz="UTC")
        logger.info("[%s] Scheduled: %s", self.task_name, cron)
        if immediate:
            self.trigger_now()
        return True

    def stop(self) -> bool:
        """Remove the recurring schedule. An in-flight run is not cancelled."""
        self._require_queue()
        self._queue.unschedule(self.task_name)
        logger.info("[%s] Stopped", self.task_name)
        return True

    def set_schedule(self, cron: str) -> bool:
        return self.start(cron, immediate=False)

    def trigger_now(self, data: dict[str, Any] | None = None) -> str | None:
        """Enqueue one run. Returns None if it coalesced with a live run."""
        self._require_queue()
        return self._queue.send(self.task_name, data or {}, singleton_key=self.task_name)

    def has_schedule(self) -> bool:
        return any(s.name == self.task_name for s in self._queue.get_schedules())

    def has_pending_job(self) -> bool:
        """Whether a run of this task is queued, deferred or active."""
        for info in self._queue.get_queues():
            if info.name == self.task_name:
                return info.pending_count > 0
        return False

    def get_status(self) -> TaskStatus | None:
        if not self._queue.is_available():
            return None

        schedule = next(
            (s for s in self._queue.get_schedules() if s.name == self.task_name), None
        )
        queue_info = next(
            (q for q in self._queue.get_queues() if q.name == self.task_name), None
        )
        last_job = self._queue.get_last_finished_job(self.task_name)

        last_run = last_job.completed_at if last_job is not None else None
        if last_run is None and schedule is not None:
            last_run = schedule.last_run_at

        return TaskStatus(
            name=self.task_name,
            schedule=schedule.cron if schedule else None,
            is_running=queue_info is not None and queue_info.pending_count > 0,
            active_jobs=queue_info.active_count if queue_info else 0,
            next_run=schedule.next_run_at if schedule else None,
            last_run=last_run,
        )

    def _require_queue(self) -> None:
        if not self._queue.is_available():
            raise QueueUnavailableError(f"Job queue not available for {self.task_name}")
