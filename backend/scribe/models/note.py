from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel


class NoteType(int, Enum):
    NOTE = 0  # quick capture card
    DOCUMENT = 1  # long-form note


class Note(SQLModel, table=True):
    __tablename__ = "notes"

    id: int | None = Field(default=None, primary_key=True)
    account_id: int | None = Field(default=None, index=True)
    type: int = Field(default=NoteType.NOTE.value)
    content: str = Field(default="")
    is_archived: bool = Field(default=False)
    is_recycle: bool = Field(default=False)
    is_share: bool = Field(default=False)
    is_top: bool = Field(default=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Attachment(SQLModel, table=True):
    __tablename__ = "attachments"

    id: int | None = Field(default=None, primary_key=True)
    note_id: int = Field(foreign_key="notes.id", index=True)
    name: str = Field(default="")
    path: str  # URL path, e.g. "/api/file/report.md"
    size: int | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Follow(SQLModel, table=True):
    __tablename__ = "follows"
    __table_args__ = (
        CheckConstraint(
            "follow_type IN ('following', 'follower')",
            name="ck_follows_type",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    account_id: str | None = Field(default=None)  # remote account identity
    site_url: str
    site_name: str = Field(default="")
    follow_type: str = Field(default="following")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
