"""
CSV Import Processor

Drives one batch of uploaded rows through the import pipeline:

    Enriching -> Validating -> Inserting -> Indexing -> Complete

with Errored reachable from any phase when the run cannot continue (lost
database connectivity, missing content-type configuration, an abandoned
stream). Row-level problems never abort the batch; they are collected as
`RowError` entries and counted in `failed`.

Progress is reported through a plain callable so that the processor knows
nothing about how (or whether) it reaches a client.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .campaigns import CampaignResolver
from .models import (
    EnrichmentStats,
    FieldEnrichment,
    ImportPhase,
    ImportProgress,
    ImportResult,
    ImportRow,
    PageMetadata,
    ProgressSink,
    RowError,
    ValidatedItem,
)
from .title_fetcher import fetch_page_metadata
from .validator import RowValidator, is_http_url, row_number
from .youtube import fetch_video_metadata
from ..config import settings
from ..core.errors import ImportAbandoned, RowPersistenceError
from ..db.repository import ContentRepository
from ..indexing.models import IndexJobPayload
from ..indexing.queue import IndexQueue

logger = logging.getLogger(__name__)

MetadataFetcher = Callable[[str], Awaitable[PageMetadata]]
VideoLookup = Callable[[Sequence[str]], Awaitable[Dict[str, PageMetadata]]]
StopSignal = Callable[[], bool]

_PHASE_ORDER = (
    ImportPhase.ENRICHING,
    ImportPhase.VALIDATING,
    ImportPhase.INSERTING,
    ImportPhase.INDEXING,
    ImportPhase.COMPLETE,
)


def _is_blank(value) -> bool:
    return value is None or not str(value).strip()


def _needs_title(row: ImportRow) -> bool:
    """A row is eligible for enrichment when its title is blank and its URL is usable."""
    if not isinstance(row, dict) or not _is_blank(row.get("title")):
        return False
    return is_http_url(row.get("current_url"))


class _Run:
    """
    Mutable bookkeeping for a single `ImportProcessor.run` call.
    """

    def __init__(self, sink: Optional[ProgressSink], interval: int) -> None:
        self.phase: Optional[ImportPhase] = None
        self.successful = 0
        self.failed = 0
        self.errors: List[RowError] = []
        self.enrichment = EnrichmentStats()
        self.fields = FieldEnrichment()
        self.indexed = 0
        self.indexing_failed = 0
        self._sink = sink
        self._interval = max(1, interval)
        self._total = 0

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def enter(self, phase: ImportPhase, total: int, message: str, current: int = 0) -> None:
        if self.phase is not None:
            if self.phase == ImportPhase.ERRORED or _PHASE_ORDER.index(phase) <= _PHASE_ORDER.index(self.phase):
                raise RuntimeError(f"Illegal phase transition {self.phase.value} -> {phase.value}")
        self.phase = phase
        self._total = total
        self._emit(current, message)

    def abort(self) -> None:
        self.phase = ImportPhase.ERRORED

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def tick(self, current: int, message: str) -> None:
        """Report in-phase progress every `interval` rows and on the last row."""
        if current % self._interval == 0 or current == self._total:
            self._emit(current, message)

    def _emit(self, current: int, message: str) -> None:
        if self._sink is None:
            return
        self._sink(
            ImportProgress(
                phase=self.phase,
                current=current,
                total=self._total,
                message=message,
                error_count=self.failed,
            )
        )

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def fail_row(self, errors: Sequence[RowError]) -> None:
        self.failed += 1
        self.errors.extend(errors)

    def result(self) -> ImportResult:
        return ImportResult(
            successful=self.successful,
            failed=self.failed,
            # Stable sort keeps multiple errors for one row in field order
            errors=sorted(self.errors, key=lambda e: e.row),
            enrichment=self.enrichment,
            field_enrichment=self.fields,
            indexed=self.indexed,
            indexing_failed=self.indexing_failed,
        )


class ImportProcessor:
    """
    Multi-phase CSV import orchestrator.

    One instance may be reused for several runs; all per-run state lives in
    a private `_Run` object.
    """

    def __init__(
        self,
        repository: ContentRepository,
        index_queue: Optional[IndexQueue] = None,
        *,
        metadata_fetcher: MetadataFetcher = fetch_page_metadata,
        video_lookup: VideoLookup = fetch_video_metadata,
        enrichment_concurrency: Optional[int] = None,
        progress_interval: Optional[int] = None,
        enable_indexing: Optional[bool] = None,
    ) -> None:
        """
        Parameters
        ----------
        repository : ContentRepository
            Persistence collaborator for lookups and inserts.
        index_queue : Optional[IndexQueue]
            Destination for index jobs; indexing is skipped when None.
        metadata_fetcher : MetadataFetcher
            Async callable returning a page's title, publish date and author.
        video_lookup : VideoLookup
            Batched lookup for video URLs, tried before the page fetch.
        enrichment_concurrency : Optional[int]
            Number of concurrent page fetches. 1 fetches strictly one URL
            at a time. Defaults to settings.enrichment_concurrency.
        progress_interval : Optional[int]
            Rows between in-phase progress events.
            Defaults to settings.progress_interval.
        enable_indexing : Optional[bool]
            Defaults to settings.enable_indexing.
        """
        self._repository = repository
        self._index_queue = index_queue
        self._metadata_fetcher = metadata_fetcher
        self._video_lookup = video_lookup
        self._concurrency = max(
            1,
            settings.enrichment_concurrency if enrichment_concurrency is None else enrichment_concurrency,
        )
        self._interval = settings.progress_interval if progress_interval is None else progress_interval
        self._enable_indexing = settings.enable_indexing if enable_indexing is None else enable_indexing
        self.last_phase: Optional[ImportPhase] = None

    async def run(
        self,
        rows: List[ImportRow],
        user_id: str,
        on_progress: Optional[ProgressSink] = None,
        should_stop: Optional[StopSignal] = None,
    ) -> ImportResult:
        """
        Import `rows` on behalf of `user_id`.

        Rows are modified in place during enrichment: blank titles are
        filled, and so are blank publish dates and authors of those rows.

        Parameters
        ----------
        rows : List[ImportRow]
            Uploaded rows in file order.
        user_id : str
            Recorded as the creator of every stored item.
        on_progress : Optional[ProgressSink]
            Called synchronously with each progress event.
        should_stop : Optional[StopSignal]
            Polled before the Validating and Inserting phases; when it
            returns True the run ends with `ImportAbandoned`.

        Returns
        -------
        ImportResult

        Raises
        ------
        ImportAbandoned
            The consumer went away before the run finished.
        ContentImportError
            Run-level failures such as lost connectivity.
        """
        run = _Run(on_progress, self._interval)
        logger.info("Import started: %d rows for user %s", len(rows), user_id)

        try:
            catalog = await self._repository.load_content_types()

            await self._enrich(run, rows)
            self._check_stop(should_stop, ImportPhase.VALIDATING)

            validated = await self._validate(run, rows, catalog)
            self._check_stop(should_stop, ImportPhase.INSERTING)

            # Not interruptible: items are already committed and need their jobs
            jobs = await self._insert(run, validated, user_id)
            await self._index(run, jobs)

            run.enter(ImportPhase.COMPLETE, len(rows), "Import complete", current=len(rows))
        except ImportAbandoned:
            run.abort()
            logger.info("Import abandoned for user %s after %d rows stored", user_id, run.successful)
            raise
        except Exception:
            run.abort()
            logger.exception("Import failed for user %s", user_id)
            raise
        finally:
            self.last_phase = run.phase

        result = run.result()
        logger.info(
            "Import finished: %d successful, %d failed, titles %d/%d, indexed %d (%d failed)",
            result.successful,
            result.failed,
            result.enrichment.successful,
            result.enrichment.attempted,
            result.indexed,
            result.indexing_failed,
        )
        return result

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _check_stop(self, should_stop: Optional[StopSignal], next_phase: ImportPhase) -> None:
        if should_stop is not None and should_stop():
            raise ImportAbandoned(f"Client disconnected before {next_phase.value}")

    async def _enrich(self, run: _Run, rows: List[ImportRow]) -> None:
        eligible = [index for index, row in enumerate(rows) if _needs_title(row)]
        total = len(eligible)
        run.enter(ImportPhase.ENRICHING, total, f"Fetching titles for {total} rows")
        if not eligible:
            return

        urls = {index: str(rows[index]["current_url"]).strip() for index in eligible}
        # One batched call for every video URL; the rest are fetched page by page
        videos = await self._video_lookup(list(urls.values()))

        work: asyncio.Queue[int] = asyncio.Queue()
        for index in eligible:
            work.put_nowait(index)
        done = 0

        async def worker() -> None:
            nonlocal done
            while True:
                try:
                    index = work.get_nowait()
                except asyncio.QueueEmpty:
                    return
                metadata = videos.get(urls[index])
                if metadata is None:
                    metadata = await self._metadata_fetcher(urls[index])
                self._apply_metadata(run, rows[index], metadata)
                done += 1
                run.tick(done, f"Fetched {done} of {total} titles")

        await asyncio.gather(*(worker() for _ in range(min(self._concurrency, total))))

        logger.info(
            "Enrichment done: titles %d/%d, publish dates %d/%d, authors %d/%d",
            run.enrichment.successful,
            run.enrichment.attempted,
            run.fields.publish_date.successful,
            run.fields.publish_date.attempted,
            run.fields.author.successful,
            run.fields.author.attempted,
        )

    @staticmethod
    def _apply_metadata(run: _Run, row: ImportRow, metadata: PageMetadata) -> None:
        """Fill the row's blank fields from `metadata`; filled fields are never replaced."""
        if metadata.title:
            row["title"] = metadata.title
        run.enrichment.record(metadata.title)

        if _is_blank(row.get("publish_date")):
            run.fields.publish_date.record(metadata.publish_date)
            if metadata.publish_date:
                row["publish_date"] = metadata.publish_date

        if _is_blank(row.get("author")):
            run.fields.author.record(metadata.author)
            if metadata.author:
                row["author"] = metadata.author

    async def _validate(
        self,
        run: _Run,
        rows: List[ImportRow],
        catalog,
    ) -> List[Tuple[ValidatedItem, List[uuid.UUID]]]:
        total = len(rows)
        run.enter(ImportPhase.VALIDATING, total, f"Validating {total} rows")

        validator = RowValidator(self._repository, catalog)
        campaigns = CampaignResolver(self._repository)
        validated: List[Tuple[ValidatedItem, List[uuid.UUID]]] = []

        for index, row in enumerate(rows):
            outcome = await validator.validate_row(row, index)
            if not outcome.ok:
                run.fail_row(outcome.errors)
            else:
                try:
                    campaign_ids = await campaigns.resolve(outcome.item.campaign_names)
                except RowPersistenceError as exc:
                    run.fail_row([RowError(row=row_number(index), message=str(exc), field="campaigns")])
                else:
                    validated.append((outcome.item, campaign_ids))
            run.tick(index + 1, f"Validated {index + 1} of {total} rows")

        logger.info(
            "Validation done: %d valid, %d invalid, %d campaigns referenced",
            len(validated),
            run.failed,
            len(campaigns),
        )
        return validated

    async def _insert(
        self,
        run: _Run,
        validated: List[Tuple[ValidatedItem, List[uuid.UUID]]],
        user_id: str,
    ) -> List[IndexJobPayload]:
        total = len(validated)
        run.enter(ImportPhase.INSERTING, total, f"Saving {total} items")

        jobs: List[IndexJobPayload] = []
        for position, (item, campaign_ids) in enumerate(validated, start=1):
            try:
                item_id, url = await self._repository.insert_content_item(
                    item,
                    created_by_user_id=user_id,
                    campaign_ids=campaign_ids,
                )
            except RowPersistenceError as exc:
                run.fail_row([RowError(row=row_number(item.row_index), message=str(exc))])
            else:
                run.successful += 1
                jobs.append(IndexJobPayload(content_item_id=item_id, url=url))
            run.tick(position, f"Saved {position} of {total} items")

        return jobs

    async def _index(self, run: _Run, jobs: List[IndexJobPayload]) -> None:
        total = len(jobs)

        if not self._enable_indexing or self._index_queue is None:
            run.enter(ImportPhase.INDEXING, 0, "Indexing disabled")
            return

        run.enter(ImportPhase.INDEXING, total, f"Queueing {total} items for indexing")
        if not jobs:
            return

        try:
            outcome = await self._index_queue.enqueue(jobs)
        except Exception:
            # Stored items stay stored; the backlog can be re-queued later
            logger.exception("Failed to enqueue %d index jobs", total)
            run.indexing_failed = total
        else:
            run.indexed = outcome.accepted
            run.indexing_failed = outcome.failed
            for error in outcome.errors:
                logger.warning("Index job rejected: %s", error)

        run.tick(total, f"Queued {run.indexed} of {total} items for indexing")
