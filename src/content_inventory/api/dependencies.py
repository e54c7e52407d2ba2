from typing import Callable

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import ContentRepository, get_async_session
from ..imports.processor import ImportProcessor, MetadataFetcher
from ..imports.title_fetcher import fetch_page_metadata
from ..indexing.queue import IndexQueue
from ..sessions.store import ImportSessionBackend, import_session_store

# Builds a processor bound to one database session
ProcessorFactory = Callable[[AsyncSession], ImportProcessor]


def get_import_session_store() -> ImportSessionBackend:
    return import_session_store


def get_metadata_fetcher() -> MetadataFetcher:
    return fetch_page_metadata


def get_processor_factory(
    metadata_fetcher: MetadataFetcher = Depends(get_metadata_fetcher),
) -> ProcessorFactory:
    def build(session: AsyncSession) -> ImportProcessor:
        return ImportProcessor(
            ContentRepository(session),
            IndexQueue(session),
            metadata_fetcher=metadata_fetcher,
        )

    return build


def get_index_queue(session: AsyncSession = Depends(get_async_session)) -> IndexQueue:
    return IndexQueue(session)
