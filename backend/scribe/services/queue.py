"""Durable job queue for Scribe.

Jobs, queues and cron schedules live in the application database, so queued
work survives restarts. Each registered queue gets one daemon worker thread
that claims jobs with a lease and hands them to the queue's handler; a
supervisor thread renews the leases of jobs running in this process, expires
the leases of workers that died, fires due cron schedules and purges old jobs.

Failed jobs are retried with exponential backoff up to the queue's retry
limit, then marked failed. A singleton key collapses duplicate sends while a
job with the same key is still queued or active.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4
from zoneinfo import ZoneInfo

from croniter import croniter
from sqlalchemy import delete, func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, col, select

from scribe.config import Settings
from scribe.models.queue import (
    FINISHED_STATES,
    PENDING_STATES,
    JobState,
    QueueDefinition,
    QueueJob,
    QueueSchedule,
)

logger = logging.getLogger(__name__)


class QueueError(RuntimeError):
    """Raised for invalid queue operations (unknown queue, duplicate worker)."""


class QueueUnavailableError(QueueError):
    """Raised when the queue has not been started or is not configured."""


@dataclass(frozen=True, slots=True)
class JobRecord:
    """Read-only view of a queued job handed to worker handlers."""

    id: str
    name: str
    data: dict[str, Any]
    state: str
    retry_count: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    output: Any
    error_message: str | None


@dataclass(frozen=True, slots=True)
class ScheduleInfo:
    name: str
    cron: str
    timezone: str
    data: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    next_run_at: datetime
    last_run_at: datetime | None


@dataclass(frozen=True, slots=True)
class QueueInfo:
    name: str
    deferred_count: int  # pending but waiting out a retry delay
    queued_count: int
    active_count: int
    total_count: int
    created_at: datetime

    @property
    def pending_count(self) -> int:
        return self.deferred_count + self.queued_count + self.active_count


Handler = Callable[[list[JobRecord]], Any]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def next_fire_time(cron: str, tz: str, after: datetime) -> datetime:
    """Return the first cron fire time strictly after *after*, in UTC."""
    local_after = _coerce_utc(after).astimezone(ZoneInfo(tz))
    fire = croniter(cron, local_after).get_next(datetime)
    return fire.astimezone(timezone.utc)


def _to_record(job: QueueJob) -> JobRecord:
    return JobRecord(
        id=job.id,
        name=job.name,
        data=json.loads(job.payload_json or "{}"),
        state=job.state,
        retry_count=job.retry_count,
        created_at=_coerce_utc(job.created_at),
        started_at=_coerce_utc(job.started_at),
        completed_at=_coerce_utc(job.completed_at),
        output=json.loads(job.output_json) if job.output_json else None,
        error_message=job.error_message,
    )


class DurableQueue:
    """Database-backed job queue with cron schedules and leased workers."""

    __slots__ = (
        "_engine",
        "_settings",
        "_handlers",
        "_threads",
        "_stop_event",
        "_available",
        "_background",
        "_lock",
        "_inflight",
        "_idle",
        "_instance_id",
    )

    def __init__(self, engine: Engine, settings: Settings) -> None:
        self._engine = engine
        self._settings = settings
        self._handlers: dict[str, tuple[Handler, int]] = {}
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()
        self._available = False
        self._background = False
        self._lock = threading.Lock()
        self._inflight: set[str] = set()
        self._idle = threading.Condition()
        self._instance_id = uuid4().hex[:12]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, background: bool = True) -> None:
        """Create queue tables and mark the queue available.

        With ``background`` the supervisor thread is started and every
        worker registered afterwards gets its own thread. Without it, callers
        drive the queue through :meth:`tick` and :meth:`drain`.
        """
        if self._available:
            return
        SQLModel.metadata.create_all(
            self._engine,
            tables=[
                QueueDefinition.__table__,
                QueueJob.__table__,
                QueueSchedule.__table__,
            ],
        )
        self._stop_event.clear()
        self._background = background
        self._available = True
        if background:
            self._spawn(self._supervise, "scribe-queue-supervisor")
        logger.info("Job queue started (instance %s)", self._instance_id)

    def stop(self, graceful: bool = True, timeout: float = 30.0) -> None:
        """Stop worker and supervisor threads."""
        self._stop_event.set()
        if graceful:
            deadline = time.monotonic() + timeout
            for thread in self._threads:
                thread.join(timeout=max(0.0, deadline - time.monotonic()))
        self._threads = []
        self._handlers.clear()
        self._available = False
        logger.info("Job queue stopped")

    def is_available(self) -> bool:
        return self._available

    def _ensure_available(self) -> None:
        if not self._available:
            raise QueueUnavailableError("Job queue is not started")

    def _spawn(self, target: Callable[..., None], name: str, *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    # ------------------------------------------------------------------
    # Queues and jobs
    # ------------------------------------------------------------------

    def create_queue(
        self,
        name: str,
        retry_limit: int | None = None,
        retry_delay_seconds: int | None = None,
    ) -> None:
        """Create a named queue. Existing queues are left untouched."""
        self._ensure_available()
        with Session(self._engine) as session:
            if session.get(QueueDefinition, name) is not None:
                return
            session.add(
                QueueDefinition(
                    name=name,
                    retry_limit=(
                        self._settings.queue_retry_limit
                        if retry_limit is None
                        else retry_limit
                    ),
                    retry_delay_seconds=(
                        self._settings.queue_retry_base_delay_seconds
                        if retry_delay_seconds is None
                        else retry_delay_seconds
                    ),
                )
            )
            try:
                session.commit()
            except IntegrityError:
                # Another process created it first
                session.rollback()
                return
        logger.info("Queue created: %s", name)

    def send(
        self,
        name: str,
        data: dict[str, Any] | None = None,
        *,
        singleton_key: str | None = None,
        start_after: datetime | None = None,
    ) -> str | None:
        """Enqueue a job. Returns the job ID, or None if it was coalesced."""
        self._ensure_available()
        with Session(self._engine) as session:
            return self._insert_job(session, name, data or {}, singleton_key, start_after)

    def _insert_job(
        self,
        session: Session,
        name: str,
        data: dict[str, Any],
        singleton_key: str | None,
        start_after: datetime | None,
    ) -> str | None:
        definition = session.get(QueueDefinition, name)
        if definition is None:
            raise QueueError(f"Queue does not exist: {name}")

        job = QueueJob(
            name=name,
            payload_json=json.dumps(data),
            singleton_key=singleton_key,
            retry_limit=definition.retry_limit,
            retry_delay_seconds=definition.retry_delay_seconds,
            start_after=start_after or _now(),
        )
        job_id = job.id
        session.add(job)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info(
                "Job for %s coalesced with a live job (singleton key %s)",
                name,
                singleton_key,
            )
            return None
        logger.debug("Job %s queued on %s", job_id, name)
        return job_id

    def get_job(self, job_id: str) -> JobRecord | None:
        with Session(self._engine) as session:
            job = session.get(QueueJob, job_id)
            return _to_record(job) if job is not None else None

    def get_last_finished_job(self, name: str) -> JobRecord | None:
        """Return the most recently finished job of a queue, if any."""
        with Session(self._engine) as session:
            job = session.exec(
                select(QueueJob)
                .where(QueueJob.name == name)
                .where(col(QueueJob.state).in_(FINISHED_STATES))
                .order_by(col(QueueJob.completed_at).desc())
            ).first()
            return _to_record(job) if job is not None else None

    def get_queues(self) -> list[QueueInfo]:
        """Return job counts for every created queue."""
        now = _now()
        with Session(self._engine) as session:
            definitions = session.exec(
                select(QueueDefinition).order_by(QueueDefinition.name)
            ).all()
            state_counts = session.exec(
                select(QueueJob.name, QueueJob.state, func.count(QueueJob.id))
                .group_by(QueueJob.name, QueueJob.state)
            ).all()
            deferred_counts = session.exec(
                select(QueueJob.name, func.count(QueueJob.id))
                .where(col(QueueJob.state).in_(PENDING_STATES))
                .where(QueueJob.start_after > now)
                .group_by(QueueJob.name)
            ).all()

        by_state: dict[str, dict[str, int]] = {}
        for name, state, count in state_counts:
            by_state.setdefault(name, {})[state] = count
        deferred = {name: count for name, count in deferred_counts}

        queues: list[QueueInfo] = []
        for definition in definitions:
            counts = by_state.get(definition.name, {})
            pending = sum(counts.get(state, 0) for state in PENDING_STATES)
            waiting = deferred.get(definition.name, 0)
            queues.append(
                QueueInfo(
                    name=definition.name,
                    deferred_count=waiting,
                    queued_count=pending - waiting,
                    active_count=counts.get(JobState.ACTIVE.value, 0),
                    total_count=sum(counts.values()),
                    created_at=_coerce_utc(definition.created_at),
                )
            )
        return queues

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def schedule(
        self,
        name: str,
        cron: str,
        data: dict[str, Any] | None = None,
        tz: str = "UTC",
    ) -> None:
        """Create or replace the cron schedule of a queue."""
        self._ensure_available()
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression: {cron!r}")
        now = _now()
        next_run = next_fire_time(cron, tz, now)

        with Session(self._engine) as session:
            if session.get(QueueDefinition, name) is None:
                raise QueueError(f"Queue does not exist: {name}")
            schedule = session.get(QueueSchedule, name)
            if schedule is None:
                schedule = QueueSchedule(
                    name=name,
                    cron=cron,
                    timezone=tz,
                    data_json=json.dumps(data or {}),
                    next_run_at=next_run,
                )
            else:
                schedule.cron = cron
                schedule.timezone = tz
                schedule.data_json = json.dumps(data or {})
                schedule.next_run_at = next_run
                schedule.updated_at = now
            session.add(schedule)
            session.commit()
        logger.info("Scheduled %s: %s (%s), next run at %s", name, cron, tz, next_run.isoformat())

    def unschedule(self, name: str) -> bool:
        """Remove a queue's cron schedule. Returns False if none existed."""
        self._ensure_available()
        with Session(self._engine) as session:
            schedule = session.get(QueueSchedule, name)
            if schedule is None:
                return False
            session.delete(schedule)
            session.commit()
        logger.info("Unscheduled %s", name)
        return True

    def get_schedules(self) -> list[ScheduleInfo]:
        with Session(self._engine) as session:
            rows = session.exec(select(QueueSchedule).order_by(QueueSchedule.name)).all()
            return [
                ScheduleInfo(
                    name=row.name,
                    cron=row.cron,
                    timezone=row.timezone,
                    data=json.loads(row.data_json or "{}"),
                    created_at=_coerce_utc(row.created_at),
                    updated_at=_coerce_utc(row.updated_at),
                    next_run_at=_coerce_utc(row.next_run_at),
                    last_run_at=_coerce_utc(row.last_run_at),
                )
                for row in rows
            ]

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def work(self, name: str, handler: Handler, batch_size: int = 1) -> None:
        """Register the handler of a queue. One handler per queue name."""
        self._ensure_available()
        with self._lock:
            if name in self._handlers:
                raise QueueError(f"Worker already registered for {name}")
            self._handlers[name] = (handler, max(1, batch_size))
        if self._background:
            self._spawn(self._work_loop, f"scribe-worker-{name}", name)
        logger.info("Worker registered for %s (batch size %d)", name, max(1, batch_size))

    def drain(self, name: str, max_batches: int | None = None) -> int:
        """Claim and process jobs of *name* in the calling thread.

        Returns the number of jobs processed.
        """
        try:
            handler, batch_size = self._handlers[name]
        except KeyError:
            raise QueueError(f"No worker registered for {name}") from None

        processed = 0
        batches = 0
        while max_batches is None or batches < max_batches:
            jobs = self._claim(name, batch_size)
            if not jobs:
                break
            self._run_batch(name, handler, jobs)
            processed += len(jobs)
            batches += 1
        return processed

    def _work_loop(self, name: str) -> None:
        logger.info("Worker for %s running", name)
        while not self._stop_event.is_set():
            try:
                processed = self.drain(name, max_batches=1)
            except Exception:
                logger.exception("Unhandled error in worker for %s", name)
                processed = 0
            if not processed:
                self._stop_event.wait(self._settings.queue_poll_interval_seconds)
        logger.info("Worker for %s exiting", name)

    def _claim(self, name: str, batch_size: int) -> list[JobRecord]:
        now = _now()
        lease_expires_at = now + timedelta(seconds=self._settings.queue_lease_seconds)
        worker_id = f"{self._instance_id}:{name}"

        with Session(self._engine) as session:
            candidates = session.exec(
                select(QueueJob.id)
                .where(QueueJob.name == name)
                .where(col(QueueJob.state).in_(PENDING_STATES))
                .where(QueueJob.start_after <= now)
                .order_by(QueueJob.created_at, QueueJob.id)
                .limit(batch_size)
            ).all()

            claimed: list[str] = []
            for job_id in candidates:
                result = session.execute(
                    update(QueueJob)
                    .where(col(QueueJob.id) == job_id)
                    .where(col(QueueJob.state).in_(PENDING_STATES))
                    .values(
                        state=JobState.ACTIVE.value,
                        started_at=now,
                        worker_id=worker_id,
                        lease_expires_at=lease_expires_at,
                    )
                )
                # Another worker won the race for this job
                if result.rowcount == 1:
                    claimed.append(job_id)
            session.commit()

            if claimed:
                with self._lock:
                    self._inflight.update(claimed)
            return [_to_record(session.get(QueueJob, job_id)) for job_id in claimed]

    def _run_batch(self, name: str, handler: Handler, jobs: list[JobRecord]) -> None:
        ids = [job.id for job in jobs]
        try:
            try:
                output = self._invoke(handler, jobs)
            except Exception as exc:
                logger.exception("Job %s on %s failed", ", ".join(ids), name)
                for job_id in ids:
                    self._fail(job_id, exc)
            else:
                for job_id in ids:
                    self._complete(job_id, output)
        finally:
            with self._lock:
                self._inflight.difference_update(ids)
            with self._idle:
                self._idle.notify_all()

    @staticmethod
    def _invoke(handler: Handler, jobs: list[JobRecord]) -> Any:
        result = handler(jobs)
        if inspect.isawaitable(result):
            # Async handlers get a fresh event loop for this thread
            loop = asyncio.new_event_loop()
            try:
                result = loop.run_until_complete(result)
            finally:
                loop.close()
        return result

    def _complete(self, job_id: str, output: Any) -> None:
        with Session(self._engine) as session:
            job = session.get(QueueJob, job_id)
            if job is None or job.state != JobState.ACTIVE.value:
                logger.warning("Job %s is no longer active, dropping its result", job_id)
                return
            job.state = JobState.COMPLETED.value
            job.completed_at = _now()
            job.lease_expires_at = None
            job.output_json = json.dumps(output, default=str)
            session.add(job)
            session.commit()

    def _fail(self, job_id: str, exc: Exception) -> None:
        now = _now()
        with Session(self._engine) as session:
            job = session.get(QueueJob, job_id)
            if job is None or job.state != JobState.ACTIVE.value:
                logger.warning("Job %s is no longer active, dropping its failure", job_id)
                return
            job.error_message = (str(exc) or exc.__class__.__name__)[:2000]
            job.lease_expires_at = None
            if job.retry_count < job.retry_limit:
                job.retry_count += 1
                job.state = JobState.RETRY.value
                job.start_after = now + self._calculate_retry_delay(
                    job.retry_delay_seconds, job.retry_count
                )
                logger.info(
                    "Scheduled retry %d/%d for job %s on %s at %s",
                    job.retry_count,
                    job.retry_limit,
                    job.id,
                    job.name,
                    _coerce_utc(job.start_after).isoformat(),
                )
            else:
                job.state = JobState.FAILED.value
                job.completed_at = now
            session.add(job)
            session.commit()

    def _calculate_retry_delay(self, base_seconds: int, attempt: int) -> timedelta:
        """Exponential backoff: min(base * 2^(attempt-1), max_delay)."""
        max_delay = self._settings.queue_retry_max_delay_seconds
        return timedelta(seconds=min(base_seconds * (2 ** (attempt - 1)), max_delay))

    def wait_for_idle(self, name: str, timeout: float) -> bool:
        """Block until no job of *name* is active. Returns False on timeout."""
        if not self._available:
            return True
        deadline = time.monotonic() + timeout
        with self._idle:
            while self._count_active(name) > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._idle.wait(min(remaining, 0.5))
        return True

    def _count_active(self, name: str) -> int:
        with Session(self._engine) as session:
            return session.exec(
                select(func.count(QueueJob.id))
                .where(QueueJob.name == name)
                .where(QueueJob.state == JobState.ACTIVE.value)
            ).one()

    # ------------------------------------------------------------------
    # Supervisor
    # ------------------------------------------------------------------

    def _supervise(self) -> None:
        logger.info("Queue supervisor running")
        last_maintenance = 0.0
        while not self._stop_event.is_set():
            try:
                self.tick()
                if (
                    time.monotonic() - last_maintenance
                    >= self._settings.queue_maintenance_interval_seconds
                ):
                    self.purge_finished()
                    last_maintenance = time.monotonic()
            except Exception:
                logger.exception("Error in queue supervisor")
            self._stop_event.wait(self._settings.queue_schedule_check_seconds)
        logger.info("Queue supervisor exiting")

    def tick(self, now: datetime | None = None) -> int:
        """Renew and expire leases, then fire due schedules.

        Returns the number of jobs enqueued by cron schedules.
        """
        self._ensure_available()
        now = now or _now()
        self._renew_leases(now)
        self._expire_leases(now)
        return self._fire_schedules(now)

    def _renew_leases(self, now: datetime) -> None:
        with self._lock:
            inflight = list(self._inflight)
        if not inflight:
            return
        with Session(self._engine) as session:
            session.execute(
                update(QueueJob)
                .where(col(QueueJob.id).in_(inflight))
                .where(QueueJob.state == JobState.ACTIVE.value)
                .values(
                    lease_expires_at=now
                    + timedelta(seconds=self._settings.queue_lease_seconds)
                )
            )
            session.commit()

    def _expire_leases(self, now: datetime) -> None:
        with self._lock:
            inflight = set(self._inflight)
        with Session(self._engine) as session:
            stale = session.exec(
                select(QueueJob)
                .where(QueueJob.state == JobState.ACTIVE.value)
                .where(QueueJob.lease_expires_at <= now)
            ).all()
            expired = 0
            for job in stale:
                if job.id in inflight:
                    continue
                job.error_message = "Lease expired before the job finished"
                job.lease_expires_at = None
                if job.retry_count < job.retry_limit:
                    job.retry_count += 1
                    job.state = JobState.RETRY.value
                    job.start_after = now
                else:
                    job.state = JobState.FAILED.value
                    job.completed_at = now
                session.add(job)
                expired += 1
            if expired:
                session.commit()
                logger.warning("Recovered %d job(s) with expired leases", expired)

    def _fire_schedules(self, now: datetime) -> int:
        with Session(self._engine) as session:
            due = [
                (row.name, row.cron, row.timezone, row.data_json, row.next_run_at)
                for row in session.exec(
                    select(QueueSchedule).where(QueueSchedule.next_run_at <= now)
                ).all()
            ]

            fired = 0
            for name, cron, tz, data_json, due_at in due:
                try:
                    next_run = next_fire_time(cron, tz, now)
                except (ValueError, KeyError):
                    logger.exception("Cannot evaluate schedule %s (%s)", name, cron)
                    continue

                # Only the process that advances the schedule row fires the job
                result = session.execute(
                    update(QueueSchedule)
                    .where(col(QueueSchedule.name) == name)
                    .where(col(QueueSchedule.next_run_at) == due_at)
                    .values(next_run_at=next_run, last_run_at=now)
                )
                session.commit()
                if result.rowcount != 1:
                    continue

                job_id = self._insert_job(
                    session, name, json.loads(data_json or "{}"), name, None
                )
                if job_id is not None:
                    fired += 1
                    logger.info("Cron fired for %s (job %s)", name, job_id)
            return fired

    def purge_finished(self, now: datetime | None = None) -> int:
        """Delete finished jobs older than the retention window."""
        cutoff = (now or _now()) - timedelta(days=self._settings.queue_delete_after_days)
        with Session(self._engine) as session:
            result = session.execute(
                delete(QueueJob)
                .where(col(QueueJob.state).in_(FINISHED_STATES))
                .where(QueueJob.completed_at < cutoff)
            )
            session.commit()
        if result.rowcount:
            logger.info("Purged %d finished job(s)", result.rowcount)
        return result.rowcount
