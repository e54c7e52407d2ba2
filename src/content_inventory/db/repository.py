"""
Content Repository

The persistence operations the import pipeline needs, on top of an async
SQLAlchemy session:

- content-type catalog lookup
- URL existence checks
- idempotent campaign upsert
- content item insertion with campaign links

Database errors are translated into the import error taxonomy: integrity
violations become `RowPersistenceError` (the batch continues), lost
connectivity becomes `PersistenceUnavailableError` (the run aborts).
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from typing import AsyncIterator, Dict, List, Sequence, Tuple

from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Campaign, ContentItem, ContentType, content_campaigns
from ..core.errors import (
    ContentTypeConfigurationError,
    PersistenceUnavailableError,
    RowPersistenceError,
)
from ..imports.models import ValidatedItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentTypeCatalog:
    """Slug -> id mapping plus the id of the system fallback type."""

    ids_by_slug: Dict[str, int]
    other_id: int

    def resolve(self, slug: str | None) -> int:
        """Return the id for `slug`, falling back to the system type."""
        if not slug:
            return self.other_id
        return self.ids_by_slug.get(slug.strip().lower(), self.other_id)


def _is_connectivity_error(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


@asynccontextmanager
async def _connectivity_guard(operation: str) -> AsyncIterator[None]:
    """Re-raise connection-level failures as PersistenceUnavailableError."""
    try:
        yield
    except SQLAlchemyError as exc:
        if _is_connectivity_error(exc):
            raise PersistenceUnavailableError(
                f"Database unavailable during {operation}"
            ) from exc
        raise


class ContentRepository:
    """
    PostgreSQL-backed persistence for imported content.

    Each inserted item is committed on its own so that a later failure in
    the batch never undoes an earlier success.
    """

    def __init__(self, session: AsyncSession) -> None:
        """
        Initialize with an async database session.

        Parameters
        ----------
        session : AsyncSession
            SQLAlchemy async session for database operations.
        """
        self._session = session

    async def load_content_types(self) -> ContentTypeCatalog:
        """
        Load the content-type catalog.

        Raises
        ------
        ContentTypeConfigurationError
            If no system ("other") content type exists.
        """
        async with _connectivity_guard("content type lookup"):
            result = await self._session.execute(select(ContentType))
            types = list(result.scalars().all())

        other = next((ct for ct in types if ct.is_system), None)
        if other is None:
            raise ContentTypeConfigurationError("System 'Other' content type not found")

        return ContentTypeCatalog(
            ids_by_slug={ct.slug: ct.id for ct in types},
            other_id=other.id,
        )

    async def url_exists(self, url: str) -> bool:
        """Return True if a content item with this URL is already stored."""
        async with _connectivity_guard("duplicate URL check"):
            result = await self._session.execute(
                select(ContentItem.id).where(ContentItem.current_url == url).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def get_or_create_campaign(self, name: str) -> uuid.UUID:
        """
        Return the id of the campaign called `name`, creating it if needed.

        Safe to call concurrently from several imports: the insert is a
        no-op when another transaction created the same name first.

        Raises
        ------
        RowPersistenceError
            If the database rejects the name (e.g. invalid characters).
        PersistenceUnavailableError
            When the database connection is lost.
        """
        stmt = (
            pg_insert(Campaign)
            .values(id=uuid.uuid4(), name=name)
            .on_conflict_do_nothing(index_elements=["name"])
        )

        async with _connectivity_guard("campaign upsert"):
            try:
                async with self._session.begin_nested():
                    await self._session.execute(stmt)
                    result = await self._session.execute(
                        select(Campaign.id).where(Campaign.name == name)
                    )
                    campaign_id = result.scalar_one()

                await self._session.commit()
            except SQLAlchemyError as exc:
                if _is_connectivity_error(exc):
                    raise
                logger.warning("Campaign upsert failed for %r: %s", name, exc)
                raise RowPersistenceError(f"Failed to create campaign '{name}'") from exc

        return campaign_id

    async def insert_content_item(
        self,
        item: ValidatedItem,
        created_by_user_id: str,
        campaign_ids: Sequence[uuid.UUID] = (),
        source: str = "csv_import",
    ) -> Tuple[uuid.UUID, str]:
        """
        Persist one validated item and link its campaigns.

        Returns
        -------
        Tuple[uuid.UUID, str]
            The new item's id and URL.

        Raises
        ------
        RowPersistenceError
            On constraint violations (e.g. a concurrent import stored the
            same URL first) or a publish date that is not YYYY-MM-DD.
        PersistenceUnavailableError
            When the database connection is lost.
        """
        try:
            publish_date = date.fromisoformat(item.publish_date) if item.publish_date else None
        except ValueError as exc:
            raise RowPersistenceError(f"Invalid publish date: {item.publish_date}") from exc

        record = ContentItem(
            id=uuid.uuid4(),
            title=item.title,
            current_url=item.current_url,
            content_type_id=item.content_type_id,
            publish_date=publish_date,
            description=item.description,
            author=item.author,
            target_audience=item.target_audience,
            tags=item.tags,
            source=source,
            created_by_user_id=created_by_user_id,
        )

        async with _connectivity_guard("content item insert"):
            try:
                async with self._session.begin_nested():
                    self._session.add(record)
                    await self._session.flush()

                    links: List[dict] = [
                        {"content_item_id": record.id, "campaign_id": campaign_id}
                        for campaign_id in dict.fromkeys(campaign_ids)
                    ]
                    if links:
                        await self._session.execute(insert(content_campaigns), links)

                await self._session.commit()
            except IntegrityError as exc:
                logger.info("Insert rejected for %s: %s", item.current_url, exc.orig)
                if "current_url" in str(exc.orig):
                    raise RowPersistenceError("URL already exists in database") from exc
                raise RowPersistenceError("Failed to create content item") from exc
            except SQLAlchemyError as exc:
                if _is_connectivity_error(exc):
                    raise
                logger.warning("Insert failed for %s: %s", item.current_url, exc)
                raise RowPersistenceError("Failed to create content item") from exc

        return record.id, record.current_url
