"""
Row Validation

Validates raw CSV rows against the content-item schema. Field-level checks
are expressed as a Pydantic model (`CsvRow`); checks that need stored state
(duplicate URLs, content-type lookup) live in `RowValidator`.

Leniency policy
---------------
- Unknown or blank content types fall back to the system "other" type.
- A blank title falls back to the URL.
- Unknown columns are ignored; non-string cells are coerced to strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Set

from pydantic import (
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic_core import PydanticCustomError

from .dates import normalize_date
from .models import ImportRow, RowError, ValidatedItem
from ..db.repository import ContentRepository, ContentTypeCatalog


_HTTP_URL = TypeAdapter(AnyHttpUrl)


def is_http_url(value: Any) -> bool:
    """Return True if `value` is a syntactically valid http(s) URL string."""
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        _HTTP_URL.validate_python(value.strip())
    except ValidationError:
        return False
    return True


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    text = text.strip()
    return text or None


def _split_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        parts = [_clean_text(v) for v in value]
    else:
        parts = [_clean_text(v) for v in str(value).split(",")]
    # Order-preserving de-duplication
    return list(dict.fromkeys(p for p in parts if p))


# ---------------------------------------------------------------------
# Row Schema
# ---------------------------------------------------------------------

class CsvRow(BaseModel):
    """
    Field-level schema for one import row (snake_case CSV columns).
    """
    title: Optional[str] = None
    current_url: Optional[str] = Field(default=None, validate_default=True)
    content_type: Optional[str] = None
    publish_date: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    target_audience: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    campaigns: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    @field_validator(
        "title",
        "current_url",
        "content_type",
        "publish_date",
        "description",
        "author",
        "target_audience",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, v: Any) -> Optional[str]:
        return _clean_text(v)

    @field_validator("tags", "campaigns", mode="before")
    @classmethod
    def _coerce_list(cls, v: Any) -> List[str]:
        return _split_list(v)

    @field_validator("current_url")
    @classmethod
    def _check_url(cls, v: Optional[str]) -> str:
        if not v:
            raise PydanticCustomError("url_required", "URL is required")
        if not is_http_url(v):
            raise PydanticCustomError("url_invalid", "Invalid URL format")
        return v

    @field_validator("content_type")
    @classmethod
    def _lower_slug(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v

    @field_validator("publish_date")
    @classmethod
    def _normalize_date(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        normalized = normalize_date(v)
        if normalized is None:
            raise PydanticCustomError(
                "date_invalid",
                "Unrecognized date '{value}'; use a format such as YYYY-MM-DD",
                {"value": v},
            )
        return normalized


# ---------------------------------------------------------------------
# Validation Result
# ---------------------------------------------------------------------

@dataclass
class RowValidation:
    """Outcome of validating one row: either an item or a list of errors."""

    ok: bool
    item: Optional[ValidatedItem] = None
    errors: List[RowError] = field(default_factory=list)


def row_number(row_index: int) -> int:
    """Spreadsheet line number of a zero-based data row (line 1 is the header)."""
    return row_index + 2


# ---------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------

class RowValidator:
    """
    Validates rows for a single import run.

    Tracks URLs already accepted in this run so that a URL repeated within
    the same batch is rejected as well as one already stored.
    """

    def __init__(self, repository: ContentRepository, catalog: ContentTypeCatalog) -> None:
        self._repository = repository
        self._catalog = catalog
        self._seen_urls: Set[str] = set()

    async def validate_row(self, row: ImportRow, row_index: int) -> RowValidation:
        line = row_number(row_index)

        if not isinstance(row, dict):
            return RowValidation(
                ok=False,
                errors=[RowError(row=line, message="Row must be an object of column values")],
            )

        try:
            parsed = CsvRow.model_validate(row)
        except ValidationError as exc:
            return RowValidation(
                ok=False,
                errors=[
                    RowError(
                        row=line,
                        message=err["msg"],
                        field=".".join(str(part) for part in err["loc"]) or None,
                    )
                    for err in exc.errors()
                ],
            )

        url = parsed.current_url
        if url in self._seen_urls:
            return RowValidation(
                ok=False,
                errors=[RowError(row=line, message="Duplicate URL in this CSV file", field="current_url")],
            )

        if await self._repository.url_exists(url):
            return RowValidation(
                ok=False,
                errors=[RowError(row=line, message="URL already exists in database", field="current_url")],
            )

        self._seen_urls.add(url)

        return RowValidation(
            ok=True,
            item=ValidatedItem(
                row_index=row_index,
                title=parsed.title or url,
                current_url=url,
                content_type_id=self._catalog.resolve(parsed.content_type),
                publish_date=parsed.publish_date,
                description=parsed.description,
                author=parsed.author,
                target_audience=parsed.target_audience,
                tags=parsed.tags or None,
                campaign_names=parsed.campaigns,
            ),
        )
