"""Per-run cancellation handles for long-running jobs.

Each run of a task gets a :class:`RunHandle` carrying its own
:class:`CancellationToken`. Control operations (stop, force restart) look the
handle up by task name in a :class:`RunRegistry` and cancel it; the running
loop polls its token at safe points.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


class CancellationToken:
    """Thread-safe cooperative cancellation flag."""

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(slots=True)
class RunHandle:
    task_name: str
    run_id: str = field(default_factory=lambda: uuid4().hex)
    token: CancellationToken = field(default_factory=CancellationToken)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RunRegistry:
    """Track the live run of each task within this process."""

    __slots__ = ("_lock", "_runs")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, RunHandle] = {}

    def begin(self, task_name: str) -> RunHandle:
        """Register a new run of *task_name*, replacing any previous handle.

        A previous handle that is still registered is cancelled, so at most
        one loop per task keeps working.
        """
        handle = RunHandle(task_name=task_name)
        with self._lock:
            previous = self._runs.get(task_name)
            if previous is not None:
                previous.token.cancel()
            self._runs[task_name] = handle
        return handle

    def end(self, handle: RunHandle) -> None:
        """Unregister *handle* if it is still the live run of its task."""
        with self._lock:
            if self._runs.get(handle.task_name) is handle:
                del self._runs[handle.task_name]

    def cancel(self, task_name: str) -> bool:
        """Cancel the live run of *task_name*. Returns False if none is live."""
        with self._lock:
            handle = self._runs.get(task_name)
        if handle is None:
            return False
        handle.token.cancel()
        return True

    def get(self, task_name: str) -> RunHandle | None:
        with self._lock:
            return self._runs.get(task_name)

    def is_active(self, task_name: str) -> bool:
        with self._lock:
            handle = self._runs.get(task_name)
        return handle is not None and not handle.token.cancelled
