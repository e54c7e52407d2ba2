"""
Progress Stream Transport

Turns an import run into a Server-Sent Events frame stream:

    data: {"type": "progress", ...}\n\n    (zero or more)
    : keepalive\n\n                          (while nothing else is sent)
    data: {"type": "complete", ...}\n\n    or
    data: {"type": "error", "message": ...}\n\n

The import itself runs as a background task so that a slow phase never
blocks keep-alive frames. When the consumer goes away the run is asked to
stop at its next phase boundary and the close callback fires immediately.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Set

from .models import ImportProgress, ImportResult, ProgressSink
from ..config import settings
from ..core.errors import ContentImportError, ImportAbandoned

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"

# Disable caching and proxy buffering so every frame is flushed promptly.
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

RunImport = Callable[[ProgressSink, Callable[[], bool]], Awaitable[ImportResult]]

# Strong references to in-flight runs; the event loop only keeps weak ones.
_background_runs: Set[asyncio.Task] = set()


# ---------------------------------------------------------------------
# Event payloads
# ---------------------------------------------------------------------

def format_sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def progress_event(progress: ImportProgress) -> Dict[str, Any]:
    return {
        "type": "progress",
        "phase": progress.phase.value,
        "current": progress.current,
        "total": progress.total,
        "percentage": progress.percentage,
        "errorCount": progress.error_count,
        "message": progress.message,
    }


def complete_event(result: ImportResult) -> Dict[str, Any]:
    return {"type": "complete", **result.model_dump(mode="json", by_alias=True)}


def error_event(message: str) -> Dict[str, Any]:
    return {"type": "error", "message": message}


# ---------------------------------------------------------------------
# Stream
# ---------------------------------------------------------------------

class ImportEventStream:
    """
    One-shot SSE stream for a single import run.
    """

    def __init__(
        self,
        run: RunImport,
        on_close: Callable[[], Any],
        keepalive_seconds: Optional[float] = None,
    ) -> None:
        """
        Parameters
        ----------
        run : RunImport
            Starts the import given a progress sink and a stop signal.
        on_close : Callable[[], Any]
            Called exactly once when the stream ends for any reason.
        keepalive_seconds : Optional[float]
            Idle time before a keep-alive comment frame is sent.
            Defaults to settings.sse_keepalive_seconds.
        """
        self._run = run
        self._on_close = on_close
        self._keepalive = settings.sse_keepalive_seconds if keepalive_seconds is None else keepalive_seconds

    async def frames(self) -> AsyncIterator[str]:
        events: asyncio.Queue[Optional[Dict[str, Any]]] = asyncio.Queue()
        stopped = asyncio.Event()

        def on_progress(progress: ImportProgress) -> None:
            events.put_nowait(progress_event(progress))

        async def drive() -> None:
            try:
                result = await self._run(on_progress, stopped.is_set)
            except ImportAbandoned as exc:
                logger.info("Import stream abandoned: %s", exc)
            except ContentImportError as exc:
                logger.warning("Import run failed: %s", exc)
                events.put_nowait(error_event(str(exc)))
            except Exception:
                logger.exception("Unexpected error during streamed import")
                events.put_nowait(error_event("Internal server error"))
            else:
                events.put_nowait(complete_event(result))
            finally:
                events.put_nowait(None)

        task = asyncio.create_task(drive())
        _background_runs.add(task)
        task.add_done_callback(_background_runs.discard)

        try:
            while True:
                try:
                    event = await asyncio.wait_for(events.get(), timeout=self._keepalive)
                except asyncio.TimeoutError:
                    yield KEEPALIVE_FRAME
                    continue
                if event is None:
                    break
                yield format_sse(event)
        finally:
            stopped.set()
            self._on_close()
