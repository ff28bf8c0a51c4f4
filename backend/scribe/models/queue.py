from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel


class JobState(str, Enum):
    CREATED = "created"
    RETRY = "retry"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


PENDING_STATES = (JobState.CREATED.value, JobState.RETRY.value)
FINISHED_STATES = (
    JobState.COMPLETED.value,
    JobState.FAILED.value,
    JobState.CANCELLED.value,
)

# At most one live job per (queue, singleton key).
_SINGLETON_WHERE = (
    "singleton_key IS NOT NULL AND state IN ('created', 'retry', 'active')"
)


class QueueDefinition(SQLModel, table=True):
    __tablename__ = "queues"

    name: str = Field(primary_key=True)
    retry_limit: int = Field(default=2)
    retry_delay_seconds: int = Field(default=30)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class QueueJob(SQLModel, table=True):
    __tablename__ = "queue_jobs"
    __table_args__ = (
        Index("ix_queue_jobs_name_state", "name", "state"),
        Index("ix_queue_jobs_state_lease", "state", "lease_expires_at"),
        Index(
            "uq_queue_jobs_singleton",
            "name",
            "singleton_key",
            unique=True,
            sqlite_where=text(_SINGLETON_WHERE),
            postgresql_where=text(_SINGLETON_WHERE),
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str
    payload_json: str = Field(default="{}")  # JSON-serialized job data
    state: str = Field(default=JobState.CREATED.value)
    singleton_key: str | None = Field(default=None)
    retry_count: int = Field(default=0)
    retry_limit: int = Field(default=2)
    retry_delay_seconds: int = Field(default=30)
    start_after: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)
    worker_id: str | None = Field(default=None)
    lease_expires_at: datetime | None = Field(default=None)
    output_json: str | None = Field(default=None)
    error_message: str | None = Field(default=None)


class QueueSchedule(SQLModel, table=True):
    __tablename__ = "queue_schedules"

    name: str = Field(primary_key=True)
    cron: str
    timezone: str = Field(default="UTC")
    data_json: str = Field(default="{}")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    next_run_at: datetime
    last_run_at: datetime | None = Field(default=None)
