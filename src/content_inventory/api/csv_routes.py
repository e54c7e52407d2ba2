"""
CSV Import Routes

This module exposes the bulk-import endpoints:

- POST /csv/start-import   hold uploaded rows under a session id
- GET  /csv/import-stream  process a held session, streaming progress (SSE)
- POST /csv/import         process rows synchronously and return the result

All endpoints require the `contributor` role. A held session can only be
streamed by the user who uploaded it, and only once.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.background import BackgroundTask

from .dependencies import (
    ProcessorFactory,
    get_import_session_store,
    get_processor_factory,
)
from .models import StartImportRequest, StartImportResponse, SyncImportRequest
from ..auth.models import UserContext
from ..auth.security import require_role
from ..config import settings
from ..core.errors import (
    ContentImportError,
    ImportSessionForbidden,
    ImportSessionNotFound,
    PersistenceUnavailableError,
)
from ..db import get_async_session, get_session_factory
from ..imports.models import ImportResult, ProgressSink
from ..imports.stream import SSE_HEADERS, ImportEventStream
from ..sessions.store import ImportSessionBackend

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/csv", tags=["csv-import"])


# ---------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------

def _describe(exc: ValidationError) -> str:
    """Render the first validation problem as a short client-facing message."""
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err["loc"])
    return f"Invalid request: {loc}: {err['msg']}" if loc else f"Invalid request: {err['msg']}"


def _check_row_limit(count: int) -> None:
    if count > settings.max_import_rows:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Too many rows: {count} (maximum {settings.max_import_rows})",
        )


# ---------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------

@router.post(
    "/start-import",
    response_model=StartImportResponse,
    summary="Upload rows for a streamed import",
)
async def start_import(
    user: Annotated[UserContext, Depends(require_role("contributor"))],
    store: Annotated[ImportSessionBackend, Depends(get_import_session_store)],
    payload: Annotated[Any, Body()] = None,
) -> StartImportResponse:
    """
    Hold parsed CSV rows server-side until the stream endpoint consumes them.

    The body is validated here rather than by FastAPI so that malformed
    uploads are reported as 400 like every other upload rejection.
    """
    try:
        req = StartImportRequest.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=_describe(exc))

    _check_row_limit(len(req.rows))

    try:
        store.create(req.session_id, user.user_id, req.rows)
    except ImportSessionForbidden as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

    return StartImportResponse(success=True, session_id=req.session_id)


@router.get(
    "/import-stream",
    summary="Process a held import session, streaming progress events",
    response_class=StreamingResponse,
)
async def import_stream(
    user: Annotated[UserContext, Depends(require_role("contributor"))],
    store: Annotated[ImportSessionBackend, Depends(get_import_session_store)],
    session_factory: Annotated[async_sessionmaker, Depends(get_session_factory)],
    build_processor: Annotated[ProcessorFactory, Depends(get_processor_factory)],
    session: Optional[str] = Query(default=None),
) -> StreamingResponse:
    """
    Run the import for `session` and stream Server-Sent Events.

    Status codes before the stream opens: 401 unauthenticated, 400 missing
    session parameter, 404 unknown or expired session, 403 session owned by
    another user. Failures after that point arrive as a terminal `error`
    event. The session is deleted when the stream ends, however it ends.
    """
    if not session:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing 'session' query parameter",
        )

    try:
        pending = store.get(session, user_id=user.user_id)
    except ImportSessionNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except ImportSessionForbidden as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

    # Enrichment writes titles into the rows; keep the held copy untouched
    rows = [dict(row) for row in pending.rows]

    async def run_import(on_progress: ProgressSink, should_stop) -> ImportResult:
        # The request-scoped session is gone by the time the body streams
        async with session_factory() as db:
            processor = build_processor(db)
            return await processor.run(rows, user.user_id, on_progress, should_stop)

    def close() -> None:
        store.delete(session)
        logger.info("Import session %s closed", session)

    stream = ImportEventStream(run_import, on_close=close)

    # Also runs when the client leaves before the body is ever iterated
    return StreamingResponse(
        stream.frames(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=BackgroundTask(store.delete, session),
    )


@router.post(
    "/import",
    response_model=ImportResult,
    summary="Import rows synchronously",
)
async def import_rows(
    req: SyncImportRequest,
    user: Annotated[UserContext, Depends(require_role("contributor"))],
    db: Annotated[AsyncSession, Depends(get_async_session)],
    build_processor: Annotated[ProcessorFactory, Depends(get_processor_factory)],
) -> ImportResult:
    """
    Run the full import pipeline and return the result in one response.
    """
    _check_row_limit(len(req.rows))

    try:
        return await build_processor(db).run(req.rows, user.user_id)
    except PersistenceUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    except ContentImportError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
