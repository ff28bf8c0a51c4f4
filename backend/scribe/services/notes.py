from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from scribe.models.note import Attachment, Follow, Note, NoteType

# Larger exclusion sets are filtered in Python to stay under SQL variable limits
_NOT_IN_LIMIT = 500


@dataclass(frozen=True, slots=True)
class AttachmentRecord:
    path: str
    name: str = ""


@dataclass(frozen=True, slots=True)
class NoteRecord:
    id: int
    content: str
    created_at: datetime
    updated_at: datetime
    attachments: tuple[AttachmentRecord, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class FollowRecord:
    account_id: str | None
    site_url: str


class NoteStore:
    """Queries over notes, attachments and follows used by background jobs."""

    __slots__ = ("_engine",)

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def list_for_reindex(self, exclude_ids: Collection[int] | None = None) -> list[NoteRecord]:
        """Return every note not in the recycle bin, ascending by id.

        Notes whose id is in *exclude_ids* are left out.
        """
        excluded = set(exclude_ids or ())
        stmt = select(Note).where(Note.is_recycle == False).order_by(Note.id)  # noqa: E712
        if excluded and len(excluded) <= _NOT_IN_LIMIT:
            stmt = stmt.where(col(Note.id).notin_(excluded))

        with Session(self._engine) as session:
            notes = [n for n in session.exec(stmt).all() if n.id not in excluded]
            attachment_rows = session.exec(
                select(Attachment)
                .join(Note, col(Note.id) == col(Attachment.note_id))
                .where(Note.is_recycle == False)  # noqa: E712
                .order_by(Attachment.id)
            ).all()

        by_note: dict[int, list[AttachmentRecord]] = {}
        for row in attachment_rows:
            by_note.setdefault(row.note_id, []).append(
                AttachmentRecord(path=row.path, name=row.name)
            )

        return [
            NoteRecord(
                id=note.id,
                content=note.content or "",
                created_at=note.created_at,
                updated_at=note.updated_at,
                attachments=tuple(by_note.get(note.id, ())),
            )
            for note in notes
        ]

    def archive_older_than(self, cutoff: datetime) -> int:
        """Archive regular notes created before *cutoff*. Returns rows changed."""
        with Session(self._engine) as session:
            result = session.execute(
                update(Note)
                .where(Note.type == NoteType.NOTE.value)
                .where(col(Note.created_at) < cutoff)
                .where(Note.is_archived == False)  # noqa: E712
                .values(is_archived=True)
            )
            session.commit()
        return result.rowcount

    def export_notes(self) -> list[dict]:
        """Return all notes with their attachments as JSON-ready dicts."""
        with Session(self._engine) as session:
            notes = session.exec(select(Note).order_by(Note.id)).all()
            attachments = session.exec(select(Attachment).order_by(Attachment.id)).all()

            by_note: dict[int, list[dict]] = {}
            for attachment in attachments:
                by_note.setdefault(attachment.note_id, []).append(
                    attachment.model_dump(mode="json")
                )

            exported = []
            for note in notes:
                data = note.model_dump(mode="json")
                data["attachments"] = by_note.get(note.id, [])
                exported.append(data)
            return exported

    def list_following(self) -> list[FollowRecord]:
        with Session(self._engine) as session:
            rows = session.exec(
                select(Follow).where(Follow.follow_type == "following").order_by(Follow.id)
            ).all()
            return [FollowRecord(account_id=row.account_id, site_url=row.site_url) for row in rows]

    def count_following(self) -> int:
        with Session(self._engine) as session:
            return session.exec(
                select(func.count(Follow.id)).where(Follow.follow_type == "following")
            ).one()
