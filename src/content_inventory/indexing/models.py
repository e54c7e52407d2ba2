"""
Indexing Queue Data Models
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


@dataclass(frozen=True)
class IndexJobPayload:
    """Represents a request to index one stored content item."""
    content_item_id: Optional[uuid.UUID]
    url: Optional[str]


@dataclass(frozen=True)
class ClaimedJob:
    """A job handed to a worker by `IndexQueue.fetch`."""
    job_id: uuid.UUID
    content_item_id: uuid.UUID
    url: str
    attempt: int


@dataclass
class EnqueueResult:
    """
    Outcome of handing a batch of jobs to the queue.

    `skipped` counts jobs ignored because a live job already exists for the
    same content item; they are still considered handed off.
    """
    enqueued: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def accepted(self) -> int:
        return self.enqueued + self.skipped


class QueueStats(BaseModel):
    """
    Job counts by state.
    """
    queued: int = 0
    retrying: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    paused: bool = False

    model_config = ConfigDict(extra="forbid")
