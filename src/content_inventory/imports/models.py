"""
Import Data Models

Canonical in-process types for one import run: raw rows, validated items,
per-row errors, enrichment statistics, progress events and the terminal
result. The terminal result is also the wire payload of the synchronous
import endpoint and the `complete` stream event, so field aliases follow the
camelCase names the web client expects.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict


# One CSV line as uploaded: arbitrary column names to untyped values.
ImportRow = Dict[str, Any]


class ImportPhase(str, enum.Enum):
    """Processor states, in the only order they may be entered."""

    ENRICHING = "enriching"
    VALIDATING = "validating"
    INSERTING = "inserting"
    INDEXING = "indexing"
    COMPLETE = "complete"
    ERRORED = "errored"


@dataclass(frozen=True)
class ImportProgress:
    """A progress notification emitted by the processor."""

    phase: ImportPhase
    current: int
    total: int
    message: str
    error_count: int = 0

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 100
        return round(self.current / self.total * 100)


ProgressSink = Callable[[ImportProgress], None]


@dataclass
class ValidatedItem:
    """A row that passed validation and is ready to be persisted."""

    row_index: int
    title: str
    current_url: str
    content_type_id: int
    publish_date: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    target_audience: Optional[str] = None
    tags: Optional[List[str]] = None
    campaign_names: List[str] = field(default_factory=list)


class RowError(BaseModel):
    """
    A single row-level failure.

    `row` is the spreadsheet line number (header is line 1).
    """
    row: int = Field(..., ge=1)
    message: str = Field(..., min_length=1)
    field: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


@dataclass(frozen=True)
class PageMetadata:
    """Details scraped from a linked page. Any field may be missing."""

    title: Optional[str] = None
    publish_date: Optional[str] = None
    author: Optional[str] = None


class EnrichmentStats(BaseModel):
    """
    Enrichment counters for one field over one run.

    Invariant: attempted == successful + failed.
    """
    attempted: int = 0
    successful: int = 0
    failed: int = 0

    def record(self, value: Optional[str]) -> None:
        self.attempted += 1
        if value:
            self.successful += 1
        else:
            self.failed += 1


class FieldEnrichment(BaseModel):
    """
    Counters for the optional fields filled from the same page fetch as the
    title. A field is only attempted when the row left it blank.
    """
    publish_date: EnrichmentStats = Field(default_factory=EnrichmentStats, alias="publishDate")
    author: EnrichmentStats = Field(default_factory=EnrichmentStats)

    model_config = ConfigDict(populate_by_name=True)


class ImportResult(BaseModel):
    """
    Terminal, immutable summary of one import run.
    """
    successful: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    errors: List[RowError] = Field(default_factory=list)
    enrichment: EnrichmentStats
    field_enrichment: FieldEnrichment = Field(default_factory=FieldEnrichment, alias="fieldEnrichment")
    indexed: int = Field(default=0, ge=0)
    indexing_failed: int = Field(default=0, ge=0, alias="indexingFailed")

    model_config = ConfigDict(frozen=True, populate_by_name=True)
