"""Tests for the conflict staging tool."""
import pytest
from sqlmodel import select

from dbsync.models.catalog import Book
from dbsync.models.change_log import ChangeLogEntry
from dbsync.models.conflict import ConflictRecord, ConflictType
from dbsync.scripts.simulate import stage_conflict

from support import append_change, book, fetch, seed_row


@pytest.fixture(name="seeded")
def seeded_fixture(pool):
    for node in pool.names:
        seed_row(pool, node, Book, **book(book_id=1))
    return pool


def _conflicts(pool):
    with pool.session("n1") as session:
        return session.exec(select(ConflictRecord)).all()


class TestStageConflict:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("scenario,expected", [
        ("version", ConflictType.VERSION),
        ("time", ConflictType.CONCURRENT),
        ("mismatch", ConflictType.DATA_MISMATCH),
    ])
    async def test_next_tick_records_conflict(self, seeded, worker, scenario, expected):
        stage_conflict(seeded, "n1", "n2", scenario, book_id=1)

        report = await worker.run_once()

        assert report.conflicted == 1
        conflicts = _conflicts(seeded)
        assert [(c.target_node, c.conflict_type) for c in conflicts] == [("n2", expected)]

    def test_mismatch_edits_only_the_target(self, seeded):
        stage_conflict(seeded, "n1", "n2", "mismatch", book_id=1)
        assert fetch(seeded, "n2", "books", 1)["title"] == "Dune (edited on n2)"
        assert fetch(seeded, "n1", "books", 1)["title"] == "Dune"

    def test_replaces_queued_entries_for_the_row(self, seeded):
        append_change(seeded, "books", 1, "UPDATE", {"title": "Dune"})
        log_id = stage_conflict(seeded, "n1", "n2", "version", book_id=1)
        with seeded.session("n1") as session:
            ids = [e.id for e in session.exec(select(ChangeLogEntry)).all()]
        assert ids == [log_id]

    def test_missing_book(self, seeded):
        with pytest.raises(LookupError):
            stage_conflict(seeded, "n1", "n2", "version", book_id=99)

    def test_target_must_be_a_replica(self, seeded):
        with pytest.raises(ValueError):
            stage_conflict(seeded, "n1", "n1", "version", book_id=1)

    def test_unknown_scenario(self, seeded):
        with pytest.raises(ValueError):
            stage_conflict(seeded, "n1", "n2", "flood", book_id=1)
