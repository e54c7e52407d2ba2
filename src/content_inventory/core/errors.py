"""
Global Error Handling

This module defines the application-wide exception handler and the domain
exception hierarchy used by the import pipeline.

Design Goals
------------
- Never leak internal exception details to clients
- Always return deterministic, machine-readable error responses
- Log full stack traces internally for debugging
- Keep row-level failures distinguishable from run-level failures
"""

from __future__ import annotations

import logging
from typing import Dict, Any

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("content_inventory.errors")


# ---------------------------------------------------------------------
# Domain Exceptions
# ---------------------------------------------------------------------

class ContentImportError(RuntimeError):
    """Base class for errors raised by the import pipeline."""


class ImportSessionNotFound(ContentImportError):
    """Raised when an import session is unknown or has expired."""


class ImportSessionForbidden(ContentImportError):
    """Raised when an import session is requested by a user who does not own it."""


class ContentTypeConfigurationError(ContentImportError):
    """Raised when the system 'other' content type is missing."""


class PersistenceUnavailableError(ContentImportError):
    """Raised when the database cannot be reached; aborts the whole run."""


class RowPersistenceError(ContentImportError):
    """Raised when a single row cannot be stored; the batch continues."""


class ImportAbandoned(ContentImportError):
    """Raised at a phase boundary once the consuming client has gone away."""


# ---------------------------------------------------------------------
# Public Exception Handlers
# ---------------------------------------------------------------------

async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Catch-all handler for uncaught exceptions.

    Registered with FastAPI as the final safety net for any exception not
    otherwise handled by route-level or framework-level handlers.

    Behavior
    --------
    - Logs the full exception stack trace for internal diagnostics.
    - Returns a generic 500 error to the client with no internal details.

    Parameters
    ----------
    request : Request
        The incoming HTTP request that triggered the exception.

    exc : Exception
        The uncaught exception instance.

    Returns
    -------
    JSONResponse
        A JSON 500 response with a minimal error payload.
    """

    logger.exception(
        "Unhandled exception during request: %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )

    payload: Dict[str, Any] = {
        "error": "internal_server_error",
        "detail": "Internal server error",
    }

    return JSONResponse(
        status_code=500,
        content=payload,
    )
