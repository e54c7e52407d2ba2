"""
Database Package

Provides SQLAlchemy async session management, model definitions and the
repositories used by the import pipeline and the indexing queue.
"""

from .session import get_async_session, get_session_factory, async_engine, AsyncSessionLocal
from .models import Base, Campaign, ContentItem, ContentType, IndexJob, IndexQueueControl, content_campaigns
from .repository import ContentRepository, ContentTypeCatalog

__all__ = [
    "get_async_session",
    "get_session_factory",
    "async_engine",
    "AsyncSessionLocal",
    "Base",
    "Campaign",
    "ContentItem",
    "ContentType",
    "IndexJob",
    "IndexQueueControl",
    "content_campaigns",
    "ContentRepository",
    "ContentTypeCatalog",
]
