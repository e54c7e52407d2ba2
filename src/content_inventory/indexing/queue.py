"""
Durable queue for content indexing jobs.

Jobs live in the `index_jobs` table so they survive restarts and can be
consumed by an indexing worker running in a separate process. The queue
owns delivery semantics: claiming with SKIP LOCKED, retry with exponential
backoff up to a retry limit, a terminal failed state, and a pause switch
stored alongside the jobs.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import exists, func, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from .models import ClaimedJob, EnqueueResult, IndexJobPayload, QueueStats
from ..config import settings
from ..db.models import (
    ContentItem,
    IndexJob,
    IndexQueueControl,
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_CREATED,
    JOB_FAILED,
    JOB_RETRY,
    LIVE_JOB_STATES,
    QUEUE_CONTROL_ID,
)
from ..imports.validator import is_http_url

logger = logging.getLogger(__name__)

# Must match the predicate of the uq_index_jobs_live_item partial index.
_LIVE_JOB_PREDICATE = text("state IN ('created', 'retry', 'active')")

# Five bind parameters per job keeps each statement well under the
# 32767-parameter limit of the PostgreSQL wire protocol.
ENQUEUE_CHUNK_SIZE = 1000

_PAUSED = (
    exists()
    .where(IndexQueueControl.id == QUEUE_CONTROL_ID, IndexQueueControl.paused.is_(True))
)


def _job_problem(job: IndexJobPayload) -> Optional[str]:
    """Return why `job` cannot be queued, or None if it is well-formed."""
    if not isinstance(job.content_item_id, uuid.UUID):
        return "missing or invalid content item id"
    if not is_http_url(job.url):
        return "missing or invalid url"
    return None


class IndexQueue:
    """
    PostgreSQL-backed indexing job queue.
    """

    def __init__(self, session: AsyncSession) -> None:
        """
        Parameters
        ----------
        session : AsyncSession
            SQLAlchemy async session for database operations.
        """
        self._session = session

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def _values(self, job: IndexJobPayload) -> dict:
        return {
            "id": uuid.uuid4(),
            "content_item_id": job.content_item_id,
            "url": job.url,
            "state": JOB_CREATED,
            "retry_limit": settings.index_job_retry_limit,
        }

    def _insert_stmt(self, jobs: Sequence[IndexJobPayload]):
        return (
            pg_insert(IndexJob)
            .values([self._values(job) for job in jobs])
            .on_conflict_do_nothing(
                index_elements=["content_item_id"],
                index_where=_LIVE_JOB_PREDICATE,
            )
            .returning(IndexJob.id)
        )

    async def _insert_each(self, jobs: Sequence[IndexJobPayload]) -> Tuple[int, int, List[str]]:
        inserted = 0
        failed = 0
        errors: List[str] = []
        for job in jobs:
            try:
                async with self._session.begin_nested():
                    result = await self._session.execute(self._insert_stmt([job]))
                    inserted += len(result.all())
            except SQLAlchemyError as exc:
                failed += 1
                errors.append(f"{job.content_item_id}: {type(exc).__name__}")
                logger.warning("Failed to enqueue index job for %s: %s", job.content_item_id, exc)
        await self._session.commit()
        return inserted, failed, errors

    async def enqueue(self, jobs: Sequence[IndexJobPayload]) -> EnqueueResult:
        """
        Add jobs to the queue with one multi-row insert per
        `ENQUEUE_CHUNK_SIZE` jobs.

        Malformed jobs are rejected individually. If a chunk's statement
        fails, that chunk is retried one job at a time so that one bad job
        cannot sink the rest.

        Returns
        -------
        EnqueueResult
            Counts of inserted, already-queued and failed jobs.
        """
        result = EnqueueResult()
        valid: List[IndexJobPayload] = []

        for job in jobs:
            problem = _job_problem(job)
            if problem:
                result.failed += 1
                result.errors.append(f"{job.content_item_id}: {problem}")
            else:
                valid.append(job)

        for start in range(0, len(valid), ENQUEUE_CHUNK_SIZE):
            chunk = valid[start:start + ENQUEUE_CHUNK_SIZE]
            try:
                rows = await self._session.execute(self._insert_stmt(chunk))
                inserted = len(rows.all())
                await self._session.commit()
            except SQLAlchemyError as exc:
                logger.warning(
                    "Batch enqueue of %d index jobs failed, retrying individually: %s",
                    len(chunk),
                    exc,
                )
                await self._session.rollback()
                inserted, failed, errors = await self._insert_each(chunk)
                result.failed += failed
                result.errors.extend(errors)
                result.enqueued += inserted
                result.skipped += len(chunk) - inserted - failed
            else:
                result.enqueued += inserted
                result.skipped += len(chunk) - inserted

        logger.info(
            "Index jobs enqueued: %d new, %d already queued, %d failed",
            result.enqueued,
            result.skipped,
            result.failed,
        )
        return result

    async def enqueue_unindexed(self) -> EnqueueResult:
        """
        Enqueue every content item that has neither a live nor a completed job.
        """
        covered = (
            exists()
            .where(IndexJob.content_item_id == ContentItem.id)
            .where(IndexJob.state.in_(LIVE_JOB_STATES + (JOB_COMPLETED,)))
        )
        rows = await self._session.execute(
            select(ContentItem.id, ContentItem.current_url)
            .where(~covered)
            .order_by(ContentItem.created_at)
        )
        jobs = [IndexJobPayload(content_item_id=item_id, url=url) for item_id, url in rows.all()]
        logger.info("Found %d unindexed content items", len(jobs))

        if not jobs:
            return EnqueueResult()
        return await self.enqueue(jobs)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def fetch(self, batch_size: int = 5) -> List[ClaimedJob]:
        """
        Claim up to `batch_size` due jobs and mark them active.

        Returns an empty list while the queue is paused. The pause switch
        is read in the same statement, so every consumer process honours it.
        """
        due = (
            select(IndexJob.id)
            .where(
                IndexJob.state.in_((JOB_CREATED, JOB_RETRY)),
                IndexJob.start_after <= func.now(),
                ~_PAUSED,
            )
            .order_by(IndexJob.created_at)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        result = await self._session.execute(
            update(IndexJob)
            .where(IndexJob.id.in_(due))
            .values(state=JOB_ACTIVE, started_at=func.now())
            .returning(IndexJob.id, IndexJob.content_item_id, IndexJob.url, IndexJob.retry_count)
        )
        jobs = [
            ClaimedJob(job_id=job_id, content_item_id=item_id, url=url, attempt=retries + 1)
            for job_id, item_id, url, retries in result.all()
        ]
        await self._session.commit()
        return jobs

    async def complete(self, job_id: uuid.UUID) -> None:
        await self._session.execute(
            update(IndexJob)
            .where(IndexJob.id == job_id)
            .values(state=JOB_COMPLETED, completed_at=func.now(), last_error=None)
        )
        await self._session.commit()

    async def fail(self, job_id: uuid.UUID, error: str) -> str:
        """
        Record a failed attempt. Schedules a retry while attempts remain,
        otherwise moves the job to the terminal failed state.

        Returns
        -------
        str
            The job's new state.
        """
        result = await self._session.execute(
            select(IndexJob.retry_count, IndexJob.retry_limit).where(IndexJob.id == job_id)
        )
        row = result.one_or_none()
        if row is None:
            raise LookupError(f"Index job {job_id} not found")

        retry_count, retry_limit = row
        if retry_count < retry_limit:
            delay = settings.index_job_retry_delay_seconds
            if settings.index_job_retry_backoff:
                delay *= 2 ** retry_count
            new_state = JOB_RETRY
            values = {
                "state": JOB_RETRY,
                "retry_count": retry_count + 1,
                "start_after": func.now() + timedelta(seconds=delay),
            }
        else:
            new_state = JOB_FAILED
            values = {"state": JOB_FAILED, "completed_at": func.now()}

        await self._session.execute(
            update(IndexJob)
            .where(IndexJob.id == job_id)
            .values(last_error=error, **values)
        )
        await self._session.commit()
        return new_state

    # ------------------------------------------------------------------
    # Administration (best effort)
    # ------------------------------------------------------------------

    async def stats(self) -> QueueStats:
        result = await self._session.execute(
            select(IndexJob.state, func.count()).group_by(IndexJob.state)
        )
        counts = {state: count for state, count in result.all()}
        return QueueStats(
            queued=counts.get(JOB_CREATED, 0),
            retrying=counts.get(JOB_RETRY, 0),
            processing=counts.get(JOB_ACTIVE, 0),
            completed=counts.get(JOB_COMPLETED, 0),
            failed=counts.get(JOB_FAILED, 0),
            paused=await self.is_paused(),
        )

    async def retry_failed(self) -> int:
        """
        Reset failed jobs so they run again.

        Jobs whose content item already has a live job are left alone.
        Returns the number of jobs reset.
        """
        live = aliased(IndexJob)
        has_live = (
            exists()
            .where(live.content_item_id == IndexJob.content_item_id)
            .where(live.state.in_(LIVE_JOB_STATES))
        )
        result = await self._session.execute(
            select(IndexJob.id)
            .where(IndexJob.state == JOB_FAILED, ~has_live)
            .order_by(IndexJob.created_at.desc())
        )
        job_ids = list(result.scalars().all())

        reset = 0
        for job_id in job_ids:
            try:
                async with self._session.begin_nested():
                    await self._session.execute(
                        update(IndexJob)
                        .where(IndexJob.id == job_id, IndexJob.state == JOB_FAILED)
                        .values(
                            state=JOB_CREATED,
                            retry_count=0,
                            start_after=func.now(),
                            completed_at=None,
                            last_error=None,
                        )
                    )
                reset += 1
            except IntegrityError:
                # Another failed job for the same item was reset first
                continue

        await self._session.commit()
        logger.info("Reset %d of %d failed index jobs", reset, len(job_ids))
        return reset

    async def is_paused(self) -> bool:
        result = await self._session.execute(
            select(IndexQueueControl.paused).where(IndexQueueControl.id == QUEUE_CONTROL_ID)
        )
        return bool(result.scalar_one_or_none())

    async def set_paused(self, paused: bool, updated_by: Optional[str] = None) -> bool:
        """
        Persist the pause switch read by `fetch`.

        Returns
        -------
        bool
            True if the stored state changed, False if it already matched.
        """
        if await self.is_paused() == paused:
            return False

        await self._session.execute(
            pg_insert(IndexQueueControl)
            .values(id=QUEUE_CONTROL_ID, paused=paused, updated_by=updated_by)
            .on_conflict_do_update(
                index_elements=["id"],
                set_={"paused": paused, "updated_by": updated_by, "updated_at": func.now()},
            )
        )
        await self._session.commit()
        logger.info("Index queue %s by %s", "paused" if paused else "resumed", updated_by or "unknown")
        return True
