"""Tests for the durable job queue: sends, claims, retries, schedules and leases."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session, select

from scribe.models.queue import JobState, QueueJob, QueueSchedule
from scribe.services.queue import (
    DurableQueue,
    QueueError,
    QueueUnavailableError,
    next_fire_time,
)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _insert_active_job(engine, name: str, lease_expires_at: datetime) -> str:
    job = QueueJob(
        name=name,
        state=JobState.ACTIVE.value,
        retry_limit=1,
        started_at=lease_expires_at - timedelta(minutes=5),
        lease_expires_at=lease_expires_at,
    )
    with Session(engine) as session:
        session.add(job)
        session.commit()
        return job.id


# ── Availability ──────────────────────────────────────────────────────


class TestAvailability:
    def test_send_before_start_raises(self, engine, settings):
        queue = DurableQueue(engine, settings)
        assert queue.is_available() is False
        with pytest.raises(QueueUnavailableError):
            queue.send("anything")

    def test_stop_marks_unavailable(self, engine, settings):
        queue = DurableQueue(engine, settings)
        queue.start(background=False)
        assert queue.is_available() is True
        queue.stop()
        assert queue.is_available() is False

    def test_wait_for_idle_when_stopped_returns_immediately(self, engine, settings):
        queue = DurableQueue(engine, settings)
        assert queue.wait_for_idle("anything", timeout=0.01) is True


# ── Sending ───────────────────────────────────────────────────────────


class TestSend:
    def test_send_creates_job(self, queue):
        queue.create_queue("reports")
        job_id = queue.send("reports", {"kind": "daily"})

        job = queue.get_job(job_id)
        assert job is not None
        assert job.name == "reports"
        assert job.state == JobState.CREATED.value
        assert job.data == {"kind": "daily"}
        assert job.retry_count == 0

    def test_send_to_unknown_queue_raises(self, queue):
        with pytest.raises(QueueError, match="does not exist"):
            queue.send("missing")

    def test_create_queue_is_idempotent(self, queue):
        queue.create_queue("reports", retry_limit=5)
        queue.create_queue("reports", retry_limit=1)
        assert [q.name for q in queue.get_queues()] == ["reports"]

    def test_singleton_key_coalesces_live_jobs(self, queue):
        queue.create_queue("reports")
        first = queue.send("reports", singleton_key="reports")
        second = queue.send("reports", singleton_key="reports")

        assert first is not None
        assert second is None
        assert queue.get_queues()[0].queued_count == 1

    def test_singleton_key_free_after_completion(self, queue):
        queue.create_queue("reports")
        queue.work("reports", lambda jobs: None)
        queue.send("reports", singleton_key="reports")
        assert queue.drain("reports") == 1

        assert queue.send("reports", singleton_key="reports") is not None

    def test_jobs_without_singleton_key_are_not_coalesced(self, queue):
        queue.create_queue("reports")
        queue.send("reports")
        queue.send("reports")
        assert queue.get_queues()[0].queued_count == 2


# ── Workers ───────────────────────────────────────────────────────────


class TestWork:
    def test_duplicate_worker_raises(self, queue):
        queue.create_queue("reports")
        queue.work("reports", lambda jobs: None)
        with pytest.raises(QueueError, match="already registered"):
            queue.work("reports", lambda jobs: None)

    def test_drain_without_worker_raises(self, queue):
        queue.create_queue("reports")
        with pytest.raises(QueueError, match="No worker"):
            queue.drain("reports")

    def test_sync_handler_output_is_stored(self, queue):
        queue.create_queue("reports")
        seen = []

        def handler(jobs):
            seen.extend(job.data["n"] for job in jobs)
            return {"done": len(jobs)}

        queue.work("reports", handler)
        job_id = queue.send("reports", {"n": 7})
        assert queue.drain("reports") == 1

        job = queue.get_job(job_id)
        assert seen == [7]
        assert job.state == JobState.COMPLETED.value
        assert job.output == {"done": 1}
        assert job.completed_at is not None

    def test_async_handler_is_awaited(self, queue):
        queue.create_queue("reports")

        async def handler(jobs):
            return {"ids": [job.id for job in jobs]}

        queue.work("reports", handler)
        job_id = queue.send("reports")
        queue.drain("reports")

        assert queue.get_job(job_id).output == {"ids": [job_id]}

    def test_jobs_claimed_in_creation_order(self, queue):
        queue.create_queue("reports")
        order = []
        queue.work("reports", lambda jobs: order.extend(job.data["n"] for job in jobs))
        for n in range(3):
            queue.send("reports", {"n": n})

        assert queue.drain("reports") == 3
        assert order == [0, 1, 2]

    def test_drain_respects_max_batches(self, queue):
        queue.create_queue("reports")
        queue.work("reports", lambda jobs: None)
        queue.send("reports")
        queue.send("reports")

        assert queue.drain("reports", max_batches=1) == 1
        assert queue.get_queues()[0].queued_count == 1

    def test_deferred_job_not_claimed_early(self, queue):
        queue.create_queue("reports")
        queue.work("reports", lambda jobs: None)
        queue.send("reports", start_after=datetime.now(timezone.utc) + timedelta(hours=1))

        assert queue.drain("reports") == 0
        info = queue.get_queues()[0]
        assert info.deferred_count == 1
        assert info.pending_count == 1


# ── Failure and retry ─────────────────────────────────────────────────


class TestRetry:
    def test_failed_job_retried_then_failed(self, queue):
        queue.create_queue("flaky", retry_limit=1, retry_delay_seconds=0)
        calls = []

        def handler(jobs):
            calls.append(jobs[0].retry_count)
            raise RuntimeError("remote down")

        queue.work("flaky", handler)
        job_id = queue.send("flaky")

        # Zero retry delay: the retry is claimable within the same drain
        assert queue.drain("flaky") == 2

        job = queue.get_job(job_id)
        assert calls == [0, 1]
        assert job.state == JobState.FAILED.value
        assert job.retry_count == 1
        assert job.error_message == "remote down"

    def test_retry_is_deferred_by_backoff(self, queue):
        queue.create_queue("flaky", retry_limit=3, retry_delay_seconds=60)

        def handler(jobs):
            raise RuntimeError("nope")

        queue.work("flaky", handler)
        job_id = queue.send("flaky")
        assert queue.drain("flaky") == 1

        job = queue.get_job(job_id)
        assert job.state == JobState.RETRY.value
        assert job.retry_count == 1
        assert queue.get_queues()[0].deferred_count == 1

    def test_retry_delay_exponential_with_cap(self, engine, make_settings):
        queue = DurableQueue(engine, make_settings(queue_retry_max_delay_seconds=600))
        assert queue._calculate_retry_delay(30, 1) == timedelta(seconds=30)
        assert queue._calculate_retry_delay(30, 2) == timedelta(seconds=60)
        assert queue._calculate_retry_delay(30, 3) == timedelta(seconds=120)
        assert queue._calculate_retry_delay(30, 10) == timedelta(seconds=600)

    def test_last_finished_job(self, queue):
        queue.create_queue("flaky", retry_limit=0)

        def handler(jobs):
            if jobs[0].data.get("fail"):
                raise ValueError("bad input")

        queue.work("flaky", handler)
        assert queue.get_last_finished_job("flaky") is None

        queue.send("flaky")
        queue.drain("flaky")
        queue.send("flaky", {"fail": True})
        queue.drain("flaky")

        last = queue.get_last_finished_job("flaky")
        assert last.state == JobState.FAILED.value
        assert last.error_message == "bad input"


# ── Schedules ─────────────────────────────────────────────────────────


class TestSchedules:
    def test_next_fire_time_utc(self):
        fire = next_fire_time("0 0 * * *", "UTC", _utc(2026, 1, 1, 12, 0))
        assert fire == _utc(2026, 1, 2, 0, 0)

    def test_next_fire_time_respects_timezone(self):
        # Midnight in Berlin (UTC+1 in January) is 23:00 UTC the day before
        fire = next_fire_time("0 0 * * *", "Europe/Berlin", _utc(2026, 1, 1, 12, 0))
        assert fire == _utc(2026, 1, 1, 23, 0)

    def test_invalid_cron_rejected(self, queue):
        queue.create_queue("reports")
        with pytest.raises(ValueError, match="Invalid cron"):
            queue.schedule("reports", "every day")

    def test_schedule_unknown_queue_raises(self, queue):
        with pytest.raises(QueueError):
            queue.schedule("missing", "0 0 * * *")

    def test_schedule_replaces_existing(self, queue):
        queue.create_queue("reports")
        queue.schedule("reports", "0 0 * * *")
        queue.schedule("reports", "0 */6 * * *")

        schedules = queue.get_schedules()
        assert len(schedules) == 1
        assert schedules[0].cron == "0 */6 * * *"
        assert schedules[0].timezone == "UTC"

    def test_unschedule(self, queue):
        queue.create_queue("reports")
        queue.schedule("reports", "0 0 * * *")
        assert queue.unschedule("reports") is True
        assert queue.unschedule("reports") is False
        assert queue.get_schedules() == []

    def test_tick_fires_due_schedule_once(self, queue, engine):
        queue.create_queue("reports")
        queue.schedule("reports", "*/5 * * * *", data={"source": "cron"})
        later = datetime.now(timezone.utc) + timedelta(minutes=10)

        assert queue.tick(now=later) == 1
        assert queue.tick(now=later) == 0

        with Session(engine) as session:
            jobs = session.exec(select(QueueJob).where(QueueJob.name == "reports")).all()
            schedule = session.get(QueueSchedule, "reports")
        assert len(jobs) == 1
        assert jobs[0].singleton_key == "reports"
        assert queue.get_job(jobs[0].id).data == {"source": "cron"}
        assert schedule.last_run_at is not None

    def test_tick_coalesces_with_pending_run(self, queue):
        queue.create_queue("reports")
        queue.schedule("reports", "*/5 * * * *")
        now = datetime.now(timezone.utc)

        assert queue.tick(now=now + timedelta(minutes=10)) == 1
        # Earlier job is still queued, so the next fire is coalesced
        assert queue.tick(now=now + timedelta(minutes=20)) == 0
        assert queue.get_queues()[0].queued_count == 1


# ── Leases and maintenance ────────────────────────────────────────────


class TestLeases:
    def test_expired_lease_requeued(self, queue, engine):
        queue.create_queue("reports")
        now = datetime.now(timezone.utc)
        job_id = _insert_active_job(engine, "reports", lease_expires_at=now - timedelta(seconds=1))

        queue.tick(now=now)

        job = queue.get_job(job_id)
        assert job.state == JobState.RETRY.value
        assert job.retry_count == 1
        assert "Lease expired" in job.error_message

    def test_expired_lease_past_retry_limit_fails(self, queue, engine):
        queue.create_queue("reports")
        now = datetime.now(timezone.utc)
        job_id = _insert_active_job(engine, "reports", lease_expires_at=now - timedelta(seconds=1))
        queue.tick(now=now)
        # Claimed again by a worker that also dies
        with Session(engine) as session:
            job = session.get(QueueJob, job_id)
            job.state = JobState.ACTIVE.value
            job.lease_expires_at = now
            session.add(job)
            session.commit()

        queue.tick(now=now + timedelta(seconds=1))
        assert queue.get_job(job_id).state == JobState.FAILED.value

    def test_live_lease_untouched(self, queue, engine):
        queue.create_queue("reports")
        now = datetime.now(timezone.utc)
        job_id = _insert_active_job(engine, "reports", lease_expires_at=now + timedelta(minutes=5))

        queue.tick(now=now)
        assert queue.get_job(job_id).state == JobState.ACTIVE.value

    def test_wait_for_idle_times_out_on_active_job(self, queue, engine):
        queue.create_queue("reports")
        _insert_active_job(
            engine, "reports", lease_expires_at=datetime.now(timezone.utc) + timedelta(minutes=5)
        )
        assert queue.wait_for_idle("reports", timeout=0.05) is False

    def test_wait_for_idle_without_active_jobs(self, queue):
        queue.create_queue("reports")
        queue.send("reports")
        assert queue.wait_for_idle("reports", timeout=0.05) is True

    def test_purge_finished_removes_old_jobs(self, queue):
        queue.create_queue("reports")
        queue.work("reports", lambda jobs: None)
        old_id = queue.send("reports")
        queue.drain("reports")

        future = datetime.now(timezone.utc) + timedelta(days=30)
        assert queue.purge_finished(now=future) == 1
        assert queue.get_job(old_id) is None

    def test_purge_keeps_recent_jobs(self, queue):
        queue.create_queue("reports")
        queue.work("reports", lambda jobs: None)
        job_id = queue.send("reports")
        queue.drain("reports")

        assert queue.purge_finished() == 0
        assert queue.get_job(job_id) is not None
