"""
API Models for the Content Inventory Server

Pydantic request/response models for the CSV import and indexing queue
endpoints. Field aliases follow the camelCase names used by the web client.

Design Goals
------------
- Strong typing
- Safe defaults (no shared mutable state)
- Clear schema documentation
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------
# CSV Import Models
# ---------------------------------------------------------------------

class StartImportRequest(BaseModel):
    """
    Upload of parsed CSV rows ahead of a streamed import.
    """
    session_id: str = Field(..., alias="sessionId", min_length=1)
    rows: List[Dict[str, Any]]

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StartImportResponse(BaseModel):
    """
    Acknowledgement that rows are held server-side under `sessionId`.
    """
    success: bool = True
    session_id: str = Field(..., alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)


class SyncImportRequest(BaseModel):
    """
    Rows for a one-shot, non-streamed import.
    """
    rows: List[Dict[str, Any]] = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------
# Indexing Queue Models
# ---------------------------------------------------------------------

class QueueActionResponse(BaseModel):
    """
    Result of a best-effort queue administration action.
    """
    success: bool
    message: str = Field(..., min_length=1)
    count: Optional[int] = Field(default=None, ge=0)
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="forbid")
