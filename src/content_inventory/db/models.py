"""
SQLAlchemy Models

Defines the database schema for:
- Content types and campaigns (reference data)
- Content items and their campaign links
- Index jobs (durable queue consumed by the indexing worker)
- The queue pause switch
"""

from __future__ import annotations

import uuid
from datetime import datetime, date
from typing import Optional, List

from sqlalchemy import (
    Boolean,
    Column,
    String,
    Integer,
    Table,
    Text,
    DateTime,
    Date,
    ForeignKey,
    Index,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID, ARRAY
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


CONTENT_SOURCES = (
    "manual",
    "csv_import",
    "cms_api",
    "ghost_api",
    "contentful_api",
    "youtube_api",
)

# Index job states. "created" and "retry" are waiting, "active" is claimed.
JOB_CREATED = "created"
JOB_RETRY = "retry"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

LIVE_JOB_STATES = (JOB_CREATED, JOB_RETRY, JOB_ACTIVE)


# ---------------------------------------------------------------------
# Association Table
# ---------------------------------------------------------------------

content_campaigns = Table(
    "content_campaigns",
    Base.metadata,
    Column(
        "content_item_id",
        UUID(as_uuid=True),
        ForeignKey("content_items.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "campaign_id",
        UUID(as_uuid=True),
        ForeignKey("campaigns.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


# ---------------------------------------------------------------------
# Reference Data
# ---------------------------------------------------------------------

class ContentType(Base):
    """
    A content classification (blog post, case study, ...).

    Exactly one row is flagged `is_system`; it is the "other" fallback for
    unknown or blank values.
    """
    __tablename__ = "content_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    slug: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    color: Mapped[str] = mapped_column(String(20), nullable=False, default="gray")
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class Campaign(Base):
    """
    A marketing campaign that content items can be linked to.
    """
    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------
# Content Item Model
# ---------------------------------------------------------------------

class ContentItem(Base):
    """
    A single piece of marketing content, identified by its unique URL.
    """
    __tablename__ = "content_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    current_url: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    content_type_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("content_types.id"),
        nullable=False,
    )
    publish_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    author: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    target_audience: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[Optional[List[str]]] = mapped_column(ARRAY(Text), nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="manual")
    created_by_user_id: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    campaigns: Mapped[List["Campaign"]] = relationship(
        "Campaign",
        secondary=content_campaigns,
        lazy="noload",
    )

    __table_args__ = (
        Index("idx_content_items_publish_date", "publish_date"),
        Index("idx_content_items_created_at", "created_at"),
    )


# ---------------------------------------------------------------------
# Index Job Model (Queue)
# ---------------------------------------------------------------------

class IndexJob(Base):
    """
    A queued request to index one content item.

    At most one live job (created, retry or active) may exist per content
    item; further enqueues for the same item are ignored.
    """
    __tablename__ = "index_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    content_item_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("content_items.id", ondelete="CASCADE"),
        nullable=False,
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default=JOB_CREATED)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    start_after: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index(
            "uq_index_jobs_live_item",
            "content_item_id",
            unique=True,
            postgresql_where=text("state IN ('created', 'retry', 'active')"),
        ),
        Index("idx_index_jobs_fetch", "state", "start_after"),
    )


# ---------------------------------------------------------------------
# Queue Control (single row)
# ---------------------------------------------------------------------

QUEUE_CONTROL_ID = 1


class IndexQueueControl(Base):
    """
    Pause switch shared by every queue consumer, whichever process it runs in.

    The table holds at most one row (id 1); a missing row means "not paused".
    """
    __tablename__ = "index_queue_control"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=QUEUE_CONTROL_ID)
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )
