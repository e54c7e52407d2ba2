"""
Import Session Store

Holds uploaded CSV rows server-side between the upload request and the
streaming request that processes them.

Design choices
--------------
- In-memory only (no persistence across process restarts, not shared
  between worker processes). `ImportSessionBackend` is the seam for a
  distributed replacement.
- Sessions expire after a TTL; an expired session is indistinguishable
  from an unknown one.
- Ownership is checked on read: a session is only served to the user who
  created it.
- Thread-safe access using a re-entrant lock.
- Global singleton `import_session_store` for application use, while still
  allowing custom instances (and clocks) in tests.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, List, Optional, Tuple

from ..config import settings
from ..core.errors import ImportSessionForbidden, ImportSessionNotFound
from ..imports.models import ImportRow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImportSession:
    """A pending upload waiting to be consumed by the stream endpoint."""
    session_id: str
    user_id: str
    rows: Tuple[ImportRow, ...]
    created_at: float
    expires_at: float


class ImportSessionBackend(abc.ABC):
    """
    Key-value storage contract for pending import sessions.
    """

    @abc.abstractmethod
    def create(self, session_id: str, user_id: str, rows: List[ImportRow]) -> ImportSession:
        ...

    @abc.abstractmethod
    def get(self, session_id: str, user_id: Optional[str] = None) -> ImportSession:
        ...

    @abc.abstractmethod
    def delete(self, session_id: str) -> bool:
        ...

    @abc.abstractmethod
    def purge_expired(self) -> int:
        ...

    @abc.abstractmethod
    def __len__(self) -> int:
        ...


class ImportSessionStore(ImportSessionBackend):
    """
    In-memory `ImportSessionBackend` with time-to-live expiry.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Parameters
        ----------
        ttl_seconds : Optional[float]
            Lifetime of an unconsumed session.
            Defaults to settings.import_session_ttl_seconds.
        clock : Callable[[], float]
            Monotonic time source; injectable for tests.
        """
        self._sessions: Dict[str, ImportSession] = {}
        self._lock = RLock()
        self._ttl = settings.import_session_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def create(self, session_id: str, user_id: str, rows: List[ImportRow]) -> ImportSession:
        """
        Store `rows` under `session_id` for `user_id`.

        Re-uploading under the same id replaces the owner's pending batch.

        Raises
        ------
        ImportSessionForbidden
            A live session with this id belongs to another user.
        """
        now = self._clock()
        with self._lock:
            existing = self._sessions.get(session_id)
            if existing is not None and existing.expires_at > now and existing.user_id != user_id:
                raise ImportSessionForbidden("Session belongs to another user")

            session = ImportSession(
                session_id=session_id,
                user_id=user_id,
                rows=tuple(rows),
                created_at=now,
                expires_at=now + self._ttl,
            )
            self._sessions[session_id] = session

        logger.info("Import session %s created: %d rows", session_id, len(rows))
        return session

    def get(self, session_id: str, user_id: Optional[str] = None) -> ImportSession:
        """
        Return a live session.

        Parameters
        ----------
        session_id : str
        user_id : Optional[str]
            When given, the session must belong to this user.

        Raises
        ------
        ImportSessionNotFound
            Unknown or expired session.
        ImportSessionForbidden
            Session owned by a different user.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise ImportSessionNotFound("Session not found or expired")
            if session.expires_at <= self._clock():
                del self._sessions[session_id]
                raise ImportSessionNotFound("Session not found or expired")

        if user_id is not None and session.user_id != user_id:
            raise ImportSessionForbidden("Session belongs to another user")
        return session

    def delete(self, session_id: str) -> bool:
        """
        Remove a session. Returns True if it existed.
        """
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """
        Drop every expired session and return how many were removed.
        """
        now = self._clock()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.expires_at <= now]
            for sid in expired:
                del self._sessions[sid]

        if expired:
            logger.info("Purged %d expired import sessions", len(expired))
        return len(expired)

    def clear_all(self) -> None:
        """
        Remove all sessions. Intended for test setup/teardown.
        """
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


# Global singleton used by the application.
import_session_store = ImportSessionStore()


async def purge_expired_sessions_task(
    store: ImportSessionBackend = import_session_store,
    interval_seconds: Optional[float] = None,
) -> None:
    """
    Background worker that periodically drops expired import sessions.
    """
    interval = settings.import_session_purge_interval_seconds if interval_seconds is None else interval_seconds
    logger.info("Import session purge worker started (every %.0fs).", interval)

    while True:
        try:
            await asyncio.sleep(interval)
            store.purge_expired()
        except asyncio.CancelledError:
            logger.info("Import session purge worker cancelled.")
            break
        except Exception:
            logger.exception("Unexpected error in import session purge worker")
            continue
