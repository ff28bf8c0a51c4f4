"""Status reporting across all background tasks.

The registry only reads: it merges each task's schedule and queue counts
with its progress snapshot, if the task keeps one.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from scribe.jobs.base import BaseTask
from scribe.models.queue import JobState
from scribe.services.progress import ProgressStore
from scribe.services.queue import DurableQueue, QueueInfo, ScheduleInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TaskInfo:
    name: str
    schedule: str | None
    is_running: bool
    is_success: bool
    last_run: datetime | None
    output: Any = None


class JobRegistry:
    """Known tasks, keyed by task name."""

    def __init__(
        self,
        queue: DurableQueue,
        progress_store: ProgressStore,
        tasks: Iterable[BaseTask],
    ) -> None:
        self._queue = queue
        self._progress = progress_store
        self._tasks: dict[str, BaseTask] = {task.task_name: task for task in tasks}

    @property
    def task_names(self) -> list[str]:
        return list(self._tasks)

    def get(self, name: str) -> BaseTask | None:
        return self._tasks.get(name)

    def initialize_all(self) -> list[str]:
        """Register every task's worker. Returns the names that failed.

        A task that cannot register is logged and skipped so the others
        still start.
        """
        failed: list[str] = []
        for name, task in self._tasks.items():
            try:
                task.initialize_task()
            except Exception:
                logger.exception("Failed to initialize task %s", name)
                failed.append(name)
        return failed

    def get_all_tasks_info(self) -> list[TaskInfo]:
        if not self._queue.is_available():
            return []
        try:
            schedules = {s.name: s for s in self._queue.get_schedules()}
            queues = {q.name: q for q in self._queue.get_queues()}
            return [
                self._build_info(name, schedules.get(name), queues.get(name))
                for name in self._tasks
            ]
        except Exception:
            logger.exception("Failed to read task info")
            return []

    def get_task_info(self, name: str) -> TaskInfo | None:
        if name not in self._tasks or not self._queue.is_available():
            return None
        try:
            schedule = next((s for s in self._queue.get_schedules() if s.name == name), None)
            queue = next((q for q in self._queue.get_queues() if q.name == name), None)
            return self._build_info(name, schedule, queue)
        except Exception:
            logger.exception("Failed to read task info for %s", name)
            return None

    def _build_info(
        self,
        name: str,
        schedule: ScheduleInfo | None,
        queue: QueueInfo | None,
    ) -> TaskInfo:
        task = self._tasks[name]
        output = None
        if task.progress_key:
            output = self._progress.get(task.progress_key)

        last_job = self._queue.get_last_finished_job(name)
        last_run = last_job.completed_at if last_job is not None else None
        if last_run is None and schedule is not None:
            last_run = schedule.last_run_at

        return TaskInfo(
            name=name,
            schedule=schedule.cron if schedule else task.default_schedule,
            is_running=queue is not None and queue.pending_count > 0,
            is_success=last_job is None or last_job.state != JobState.FAILED.value,
            last_run=last_run,
            output=output,
        )
