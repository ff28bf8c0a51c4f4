from __future__ import annotations

import pytest
from sqlmodel import Session, select

from scribe.jobs.archive import ARCHIVE_TASK_NAME, ArchiveNotesTask
from scribe.models.note import Note, NoteType
from scribe.models.queue import JobState


@pytest.fixture(name="task")
def task_fixture(queue, settings, note_store) -> ArchiveNotesTask:
    task = ArchiveNotesTask(queue, settings, note_store)
    task.initialize()
    return task


def _archived_ids(engine) -> list[int]:
    with Session(engine) as session:
        return sorted(
            n.id for n in session.exec(select(Note).where(Note.is_archived == True)).all()  # noqa: E712
        )


class TestArchiveNotes:
    @pytest.mark.asyncio
    async def test_archives_only_old_regular_notes(self, task, make_notes, engine):
        old = make_notes(2, age_days=45)
        make_notes(2, age_days=5)
        make_notes(1, age_days=45, note_type=NoteType.DOCUMENT)

        result = await task.run_task()

        assert result["archived_count"] == 2
        assert result["auto_archive_days"] == 30
        assert "cutoff_date" in result
        assert _archived_ids(engine) == old

    @pytest.mark.asyncio
    async def test_nothing_to_archive(self, task, make_notes):
        make_notes(3, age_days=1)

        result = await task.run_task()

        assert result == {"archived_count": 0, "message": "No notes to archive"}

    @pytest.mark.asyncio
    async def test_rerun_is_harmless(self, task, make_notes, engine):
        old = make_notes(2, age_days=60)

        first = await task.run_task()
        second = await task.run_task()

        assert first["archived_count"] == 2
        assert second["archived_count"] == 0
        assert _archived_ids(engine) == old

    def test_days_override_from_job_data(self, task, queue, make_notes, engine):
        week_old = make_notes(1, age_days=8)
        make_notes(1, age_days=2)

        job_id = task.trigger_now({"auto_archive_days": 7})
        queue.drain(ARCHIVE_TASK_NAME)

        job = queue.get_job(job_id)
        assert job.state == JobState.COMPLETED.value
        assert job.output["archived_count"] == 1
        assert job.output["auto_archive_days"] == 7
        assert _archived_ids(engine) == week_old

    def test_days_from_settings(self, queue, note_store, make_settings, make_notes, engine):
        task = ArchiveNotesTask(queue, make_settings(auto_archive_days=3), note_store)
        task.initialize()
        older = make_notes(1, age_days=4)

        task.trigger_now()
        queue.drain(ARCHIVE_TASK_NAME)

        assert _archived_ids(engine) == older

    def test_daily_default_schedule(self, task):
        task.start(immediate=False)
        assert task.get_status().schedule == "0 0 * * *"
