"""
Indexing Queue Administration Routes

Best-effort controls over the indexing job queue. Each action reports what
it did rather than guaranteeing an outcome: a failed action comes back as
`success: false` with a message, not as an HTTP error.

All endpoints require the `admin` role.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError

from .dependencies import get_index_queue
from .models import QueueActionResponse
from ..auth.models import UserContext
from ..auth.security import require_role
from ..core.errors import PersistenceUnavailableError
from ..indexing.models import QueueStats
from ..indexing.queue import IndexQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queue", tags=["indexing-queue"])

Admin = Annotated[UserContext, Depends(require_role("admin"))]
Queue = Annotated[IndexQueue, Depends(get_index_queue)]


def _failed(action: str, exc: Exception) -> QueueActionResponse:
    logger.warning("Queue action '%s' failed: %s", action, exc)
    return QueueActionResponse(success=False, message=f"Failed to {action}")


@router.get("/stats", response_model=QueueStats, summary="Job counts by state")
async def queue_stats(user: Admin, queue: Queue) -> QueueStats:
    return await queue.stats()


async def _set_paused(queue: IndexQueue, paused: bool, user: UserContext) -> QueueActionResponse:
    state = "paused" if paused else "resumed"
    try:
        changed = await queue.set_paused(paused, updated_by=user.user_id)
    except (SQLAlchemyError, PersistenceUnavailableError) as exc:
        return _failed("pause the indexing queue" if paused else "resume the indexing queue", exc)

    return QueueActionResponse(
        success=True,
        message=f"Indexing queue {state}" if changed else f"Indexing queue was already {state}",
        details={"paused": paused, "changed": changed},
    )


@router.post("/pause", response_model=QueueActionResponse, summary="Pause job delivery")
async def pause_queue(user: Admin, queue: Queue) -> QueueActionResponse:
    return await _set_paused(queue, True, user)


@router.post("/resume", response_model=QueueActionResponse, summary="Resume job delivery")
async def resume_queue(user: Admin, queue: Queue) -> QueueActionResponse:
    return await _set_paused(queue, False, user)


@router.post("/retry-failed", response_model=QueueActionResponse, summary="Re-run failed jobs")
async def retry_failed_jobs(user: Admin, queue: Queue) -> QueueActionResponse:
    try:
        count = await queue.retry_failed()
    except (SQLAlchemyError, PersistenceUnavailableError) as exc:
        return _failed("retry failed jobs", exc)

    return QueueActionResponse(
        success=True,
        message=f"Retrying {count} failed jobs",
        count=count,
    )


@router.post(
    "/enqueue-pending",
    response_model=QueueActionResponse,
    summary="Queue every content item that has never been indexed",
)
async def enqueue_pending(user: Admin, queue: Queue) -> QueueActionResponse:
    try:
        outcome = await queue.enqueue_unindexed()
    except (SQLAlchemyError, PersistenceUnavailableError) as exc:
        return _failed("enqueue pending items", exc)

    return QueueActionResponse(
        success=outcome.failed == 0,
        message=f"Queued {outcome.enqueued} items for indexing",
        count=outcome.enqueued,
        details={
            "skipped": outcome.skipped,
            "failed": outcome.failed,
            "errors": outcome.errors,
        },
    )
