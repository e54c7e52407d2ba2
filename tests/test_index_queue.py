"""
Index Queue Tests

The database session is mocked; these tests cover the queue's own logic
(job validation, batch-then-fallback insertion, retry scheduling and
pause handling) rather than SQL behaviour.
"""

import contextlib
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, ProgrammingError

from content_inventory.db.models import JOB_CREATED, JOB_FAILED, JOB_RETRY
from content_inventory.indexing.models import IndexJobPayload
from content_inventory.indexing.queue import ENQUEUE_CHUNK_SIZE, IndexQueue


def rows(*values):
    result = MagicMock()
    result.all.return_value = list(values)
    return result


def scalar(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


def make_session(*execute_results):
    session = AsyncMock()
    session.execute.side_effect = list(execute_results)

    @contextlib.asynccontextmanager
    async def savepoint():
        yield

    session.begin_nested = MagicMock(side_effect=lambda: savepoint())
    return session


def job(n: int) -> IndexJobPayload:
    return IndexJobPayload(content_item_id=uuid.uuid4(), url=f"https://example.com/{n}")


class TestEnqueue:

    async def test_batch_insert_single_round_trip(self):
        jobs = [job(i) for i in range(5)]
        session = make_session(rows(*[(uuid.uuid4(),) for _ in range(5)]))

        result = await IndexQueue(session).enqueue(jobs)

        assert session.execute.await_count == 1
        assert result.enqueued == 5
        assert result.skipped == 0
        assert result.failed == 0
        session.commit.assert_awaited()

    async def test_existing_live_jobs_counted_as_skipped(self):
        session = make_session(rows((uuid.uuid4(),), (uuid.uuid4(),)))

        result = await IndexQueue(session).enqueue([job(i) for i in range(3)])

        assert result.enqueued == 2
        assert result.skipped == 1
        assert result.accepted == 3

    async def test_malformed_jobs_rejected_individually(self):
        good = job(1)
        bad_url = IndexJobPayload(content_item_id=uuid.uuid4(), url="not a url")
        bad_id = IndexJobPayload(content_item_id=None, url="https://example.com/x")
        session = make_session(rows((uuid.uuid4(),)))

        result = await IndexQueue(session).enqueue([bad_url, good, bad_id])

        assert result.enqueued == 1
        assert result.failed == 2
        assert len(result.errors) == 2

    async def test_nothing_valid_means_no_database_call(self):
        session = make_session()

        result = await IndexQueue(session).enqueue(
            [IndexJobPayload(content_item_id=None, url=None)]
        )

        assert result.failed == 1
        session.execute.assert_not_awaited()

    async def test_large_batches_are_split_into_chunks(self):
        jobs = [job(i) for i in range(ENQUEUE_CHUNK_SIZE * 2 + 500)]
        session = make_session(
            rows(*[(uuid.uuid4(),)] * ENQUEUE_CHUNK_SIZE),
            rows(*[(uuid.uuid4(),)] * ENQUEUE_CHUNK_SIZE),
            rows(*[(uuid.uuid4(),)] * 450),
        )

        result = await IndexQueue(session).enqueue(jobs)

        assert session.execute.await_count == 3
        assert session.commit.await_count == 3
        assert result.enqueued == ENQUEUE_CHUNK_SIZE * 2 + 450
        assert result.skipped == 50
        assert result.failed == 0

    async def test_failed_chunk_does_not_affect_other_chunks(self):
        jobs = [job(i) for i in range(ENQUEUE_CHUNK_SIZE + 2)]
        session = make_session(
            rows(*[(uuid.uuid4(),)] * ENQUEUE_CHUNK_SIZE),
            ProgrammingError("INSERT", {}, Exception("batch rejected")),
            rows((uuid.uuid4(),)),
            IntegrityError("INSERT", {}, Exception("bad row")),
        )

        result = await IndexQueue(session).enqueue(jobs)

        session.rollback.assert_awaited_once()
        assert result.enqueued == ENQUEUE_CHUNK_SIZE + 1
        assert result.failed == 1

    async def test_batch_failure_falls_back_to_per_job_inserts(self):
        jobs = [job(i) for i in range(3)]
        session = make_session(
            ProgrammingError("INSERT", {}, Exception("batch rejected")),
            rows((uuid.uuid4(),)),
            IntegrityError("INSERT", {}, Exception("bad row")),
            rows((uuid.uuid4(),)),
        )

        result = await IndexQueue(session).enqueue(jobs)

        session.rollback.assert_awaited_once()
        assert result.enqueued == 2
        assert result.failed == 1
        assert result.skipped == 0
        assert str(jobs[1].content_item_id) in result.errors[0]


class TestConsumer:

    async def test_fetch_filters_on_stored_pause_switch(self):
        session = make_session(rows())

        assert await IndexQueue(session).fetch() == []

        statement = session.execute.await_args.args[0]
        sql = str(statement.compile(dialect=postgresql.dialect()))
        assert "index_queue_control" in sql
        assert "SKIP LOCKED" in sql
        session.execute.assert_awaited_once()

    async def test_fetch_reports_attempt_number(self):
        job_id, item_id = uuid.uuid4(), uuid.uuid4()
        session = make_session(rows((job_id, item_id, "https://example.com/1", 2)))

        claimed = await IndexQueue(session).fetch()

        assert claimed[0].job_id == job_id
        assert claimed[0].attempt == 3

    @pytest.mark.parametrize("retry_count, expected", [(0, JOB_RETRY), (2, JOB_RETRY), (3, JOB_FAILED)])
    async def test_fail_retries_until_limit(self, retry_count, expected):
        lookup = MagicMock()
        lookup.one_or_none.return_value = (retry_count, 3)
        session = make_session(lookup, MagicMock())

        state = await IndexQueue(session).fail(uuid.uuid4(), "timeout")

        assert state == expected
        assert session.execute.await_count == 2

    async def test_fail_unknown_job(self):
        lookup = MagicMock()
        lookup.one_or_none.return_value = None
        session = make_session(lookup)

        with pytest.raises(LookupError):
            await IndexQueue(session).fail(uuid.uuid4(), "timeout")


class TestAdministration:

    async def test_stats_by_state(self):
        session = make_session(rows((JOB_CREATED, 4), (JOB_FAILED, 1)), scalar(True))

        stats = await IndexQueue(session).stats()

        assert stats.queued == 4
        assert stats.failed == 1
        assert stats.processing == 0
        assert stats.paused is True

    async def test_retry_failed_skips_conflicts(self):
        ids = [uuid.uuid4(), uuid.uuid4(), uuid.uuid4()]
        lookup = MagicMock()
        lookup.scalars.return_value.all.return_value = ids
        session = make_session(
            lookup,
            MagicMock(),
            IntegrityError("UPDATE", {}, Exception("live job exists")),
            MagicMock(),
        )

        reset = await IndexQueue(session).retry_failed()

        assert reset == 2
        session.commit.assert_awaited()


class TestPauseSwitch:

    async def test_pause_is_stored(self):
        session = make_session(scalar(None), MagicMock())

        changed = await IndexQueue(session).set_paused(True, updated_by="admin-1")

        assert changed is True
        upsert = session.execute.await_args_list[1].args[0]
        sql = str(upsert.compile(dialect=postgresql.dialect()))
        assert "INSERT INTO index_queue_control" in sql
        assert "ON CONFLICT (id) DO UPDATE" in sql
        session.commit.assert_awaited_once()

    async def test_repeated_pause_changes_nothing(self):
        session = make_session(scalar(True))

        assert await IndexQueue(session).set_paused(True) is False
        session.execute.assert_awaited_once()
        session.commit.assert_not_awaited()

    async def test_resume_clears_stored_pause(self):
        session = make_session(scalar(True), MagicMock())

        assert await IndexQueue(session).set_paused(False) is True
        session.commit.assert_awaited_once()

    async def test_missing_control_row_means_running(self):
        session = make_session(scalar(None))

        assert await IndexQueue(session).is_paused() is False
