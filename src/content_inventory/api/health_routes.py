from fastapi import APIRouter, Depends

from .dependencies import get_import_session_store
from ..config import settings
from ..sessions.store import ImportSessionBackend

router = APIRouter(tags=["health"])


@router.get("/health")
def health(store: ImportSessionBackend = Depends(get_import_session_store)):
    return {
        "status": "ok",
        "pending_import_sessions": len(store),
        "indexing_enabled": settings.enable_indexing,
    }
