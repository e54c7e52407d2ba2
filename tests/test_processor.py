"""
Import Processor Tests

Exercises the phase pipeline end to end against in-memory collaborators:
enrichment rules, row-level failure isolation, indexing handoff accounting,
progress reporting and the abandon/errored paths.
"""

import asyncio
from collections import defaultdict

import pytest

from content_inventory.core.errors import (
    ContentTypeConfigurationError,
    ImportAbandoned,
    PersistenceUnavailableError,
    RowPersistenceError,
)
from content_inventory.imports.models import ImportPhase, PageMetadata
from content_inventory.imports.processor import ImportProcessor

from conftest import FakeIndexQueue, FakeRepository, StubMetadataFetcher


def make_processor(repository=None, index_queue=None, titles=None, pages=None, **kwargs):
    fetcher = StubMetadataFetcher(titles, pages)
    processor = ImportProcessor(
        repository if repository is not None else FakeRepository(),
        index_queue if index_queue is not None else FakeIndexQueue(),
        metadata_fetcher=fetcher,
        **kwargs,
    )
    return processor, fetcher


def url(n: int) -> str:
    return f"https://example.com/post-{n}"


# ---------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------

async def test_three_blank_titles_all_enriched():
    rows = [{"title": "", "current_url": url(i)} for i in range(3)]
    repo = FakeRepository()
    processor, fetcher = make_processor(repo, titles={url(i): f"Post {i}" for i in range(3)})

    result = await processor.run(rows, "user-1")

    assert result.enrichment.attempted == 3
    assert result.enrichment.successful == 3
    assert result.successful == 3
    assert result.failed == 0
    assert fetcher.calls == [url(0), url(1), url(2)]
    assert [repo.items[url(i)].title for i in range(3)] == ["Post 0", "Post 1", "Post 2"]


async def test_failed_fetches_fall_back_to_url():
    # One URL times out and one is a PDF; the fetcher yields None for both
    rows = [
        {"current_url": "https://slow.example/page"},
        {"current_url": "https://example.com/report.pdf"},
        {"current_url": url(1)},
    ]
    repo = FakeRepository()
    processor, _ = make_processor(repo, titles={url(1): "Real Title"})

    result = await processor.run(rows, "user-1")

    assert result.successful == 3
    assert result.enrichment.failed == 2
    assert result.enrichment.successful == 1
    assert repo.items["https://slow.example/page"].title == "https://slow.example/page"
    assert repo.items["https://example.com/report.pdf"].title == "https://example.com/report.pdf"


async def test_prefilled_titles_never_fetched_or_overwritten():
    rows = [{"title": "Mine", "current_url": url(1)}, {"title": "  ", "current_url": url(2)}]
    repo = FakeRepository()
    processor, fetcher = make_processor(repo, titles={url(1): "Theirs", url(2): "Fetched"})

    result = await processor.run(rows, "user-1")

    assert fetcher.calls == [url(2)]
    assert repo.items[url(1)].title == "Mine"
    assert repo.items[url(2)].title == "Fetched"
    assert result.enrichment.attempted == 1


async def test_rows_without_usable_url_are_not_enriched():
    rows = [{"title": ""}, {"title": "", "current_url": "not-a-url"}]
    processor, fetcher = make_processor()

    result = await processor.run(rows, "user-1")

    assert fetcher.calls == []
    assert result.enrichment.attempted == 0
    assert result.failed == 2


async def test_enrichment_is_sequential_by_default():
    in_flight = 0
    peak = 0

    async def fetcher(u):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        in_flight -= 1
        return PageMetadata()

    processor = ImportProcessor(FakeRepository(), FakeIndexQueue(), metadata_fetcher=fetcher, enrichment_concurrency=1)
    await processor.run([{"current_url": url(i)} for i in range(5)], "user-1")

    assert peak == 1


async def test_enrichment_concurrency_is_bounded():
    in_flight = 0
    peak = 0

    async def fetcher(u):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return PageMetadata(title="t")

    processor = ImportProcessor(FakeRepository(), FakeIndexQueue(), metadata_fetcher=fetcher, enrichment_concurrency=3)
    result = await processor.run([{"current_url": url(i)} for i in range(10)], "user-1")

    assert peak == 3
    assert result.enrichment.successful == 10


async def test_blank_date_and_author_filled_from_page():
    rows = [
        {"current_url": url(1)},
        {"current_url": url(2), "publish_date": "2023-01-05", "author": "Me"},
    ]
    repo = FakeRepository()
    processor, _ = make_processor(
        repo,
        pages={
            url(1): PageMetadata(title="One", publish_date="2024-02-15", author="Ann"),
            url(2): PageMetadata(title="Two", publish_date="2020-01-01", author="Bob"),
        },
    )

    result = await processor.run(rows, "user-1")

    assert repo.items[url(1)].publish_date == "2024-02-15"
    assert repo.items[url(1)].author == "Ann"
    assert repo.items[url(2)].publish_date == "2023-01-05"
    assert repo.items[url(2)].author == "Me"
    assert result.enrichment.successful == 2
    assert result.field_enrichment.publish_date.attempted == 1
    assert result.field_enrichment.publish_date.successful == 1
    assert result.field_enrichment.author.attempted == 1


async def test_missing_page_metadata_counted_as_failed():
    repo = FakeRepository()
    processor, _ = make_processor(repo, titles={url(1): "Only a title"})

    result = await processor.run([{"current_url": url(1)}], "user-1")

    assert result.successful == 1
    assert repo.items[url(1)].publish_date is None
    assert repo.items[url(1)].author is None
    fields = result.field_enrichment
    assert fields.publish_date.attempted == fields.publish_date.failed == 1
    assert fields.author.attempted == fields.author.failed == 1


async def test_titled_rows_get_no_metadata_fetch():
    repo = FakeRepository()
    processor, fetcher = make_processor(
        repo,
        pages={url(1): PageMetadata(title="Theirs", publish_date="2024-02-15", author="Ann")},
    )

    result = await processor.run([{"title": "Mine", "current_url": url(1)}], "user-1")

    assert fetcher.calls == []
    assert repo.items[url(1)].publish_date is None
    assert result.field_enrichment.publish_date.attempted == 0


async def test_video_urls_resolved_in_one_batch():
    video = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    lookups = []

    async def video_lookup(urls):
        lookups.append(list(urls))
        return {video: PageMetadata(title="Clip", publish_date="2023-05-01", author="Channel")}

    repo = FakeRepository()
    processor, fetcher = make_processor(repo, titles={url(1): "Page"}, video_lookup=video_lookup)

    result = await processor.run([{"current_url": video}, {"current_url": url(1)}], "user-1")

    assert lookups == [[video, url(1)]]
    assert fetcher.calls == [url(1)]
    assert repo.items[video].title == "Clip"
    assert repo.items[video].author == "Channel"
    assert result.enrichment.attempted == result.enrichment.successful == 2


# ---------------------------------------------------------------------
# Validation & insertion
# ---------------------------------------------------------------------

async def test_existing_url_counts_as_failure():
    repo = FakeRepository(existing_urls={url(1)})
    processor, _ = make_processor(repo)

    result = await processor.run([{"title": "Dup", "current_url": url(1)}], "user-1")

    assert result.successful == 0
    assert result.failed == 1
    assert "already exists" in result.errors[0].message
    assert result.errors[0].row == 2


async def test_replaying_a_batch_imports_nothing_new():
    rows = [{"title": f"T{i}", "current_url": url(i)} for i in range(4)]
    repo = FakeRepository()

    first, _ = make_processor(repo)
    assert (await first.run([dict(r) for r in rows], "user-1")).successful == 4

    second, _ = make_processor(repo)
    replay = await second.run([dict(r) for r in rows], "user-1")

    assert replay.successful == 0
    assert replay.failed == len(rows)


async def test_bad_rows_do_not_abort_batch():
    rows = [
        {"title": "ok", "current_url": url(1)},
        {"title": "bad url", "current_url": "nope"},
        {"title": "bad date", "current_url": url(2), "publish_date": "next Tuesday"},
        {"title": "ok again", "current_url": url(3)},
    ]
    processor, _ = make_processor()

    result = await processor.run(rows, "user-1")

    assert result.successful == 2
    assert result.failed == 2
    assert [e.row for e in result.errors] == [3, 4]


async def test_insert_race_degrades_to_row_failure():
    repo = FakeRepository(reject_on_insert={url(2): "URL already exists in database"})
    queue = FakeIndexQueue()
    processor, _ = make_processor(repo, queue)

    result = await processor.run([{"title": "a", "current_url": url(i)} for i in (1, 2, 3)], "user-1")

    assert result.successful == 2
    assert result.failed == 1
    assert result.errors[0].row == 3
    assert [job.url for job in queue.jobs] == [url(1), url(3)]


async def test_new_campaign_created_once_per_batch():
    repo = FakeRepository()
    processor, _ = make_processor(repo)
    rows = [{"title": "t", "current_url": url(i), "campaigns": "Spring, Summer"} for i in range(3)]

    await processor.run(rows, "user-1")

    assert set(repo.campaigns) == {"Spring", "Summer"}
    assert repo.campaign_calls == 2
    assert repo.campaign_links[url(0)] == [repo.campaigns["Spring"], repo.campaigns["Summer"]]


async def test_early_year_date_is_stored_in_canonical_form():
    repo = FakeRepository()
    processor, _ = make_processor(repo)
    rows = [
        {"title": "Old", "current_url": url(1), "publish_date": "0999-01-01"},
        {"title": "New", "current_url": url(2), "publish_date": "2024-02-15"},
    ]

    result = await processor.run(rows, "user-1")

    assert result.successful == 2
    assert result.failed == 0
    assert repo.items[url(1)].publish_date == "0999-01-01"


async def test_rejected_campaign_fails_only_its_row():
    class PickyRepository(FakeRepository):
        async def get_or_create_campaign(self, name):
            if "\x00" in name:
                raise RowPersistenceError(f"Failed to create campaign '{name}'")
            return await super().get_or_create_campaign(name)

    repo = PickyRepository()
    processor, _ = make_processor(repo)
    rows = [
        {"title": "a", "current_url": url(1), "campaigns": "Q1\x00"},
        {"title": "b", "current_url": url(2), "campaigns": "Q2"},
    ]

    result = await processor.run(rows, "user-1")

    assert processor.last_phase == ImportPhase.COMPLETE
    assert result.successful == 1
    assert result.failed == 1
    assert result.errors[0].row == 2
    assert result.errors[0].field == "campaigns"
    assert list(repo.items) == [url(2)]


async def test_errors_sorted_by_row():
    rows = [{"current_url": "bad"}, {"current_url": url(1)}, {"current_url": "worse"}]
    repo = FakeRepository(reject_on_insert={url(1): "Failed to create content item"})
    processor, _ = make_processor(repo)

    result = await processor.run(rows, "user-1")

    assert [e.row for e in result.errors] == [2, 3, 4]


# ---------------------------------------------------------------------
# Indexing handoff
# ---------------------------------------------------------------------

async def test_every_inserted_item_is_queued():
    queue = FakeIndexQueue()
    processor, _ = make_processor(index_queue=queue)

    result = await processor.run([{"title": "t", "current_url": url(i)} for i in range(5)], "user-1")

    assert queue.calls == 1
    assert len(queue.jobs) == 5
    assert result.indexed == 5
    assert result.indexing_failed == 0


async def test_rejected_jobs_counted_without_failing_rows():
    processor, _ = make_processor(index_queue=FakeIndexQueue(reject=2))

    result = await processor.run([{"title": "t", "current_url": url(i)} for i in range(5)], "user-1")

    assert result.successful == 5
    assert result.indexed == 3
    assert result.indexing_failed == 2


async def test_queue_outage_marks_all_jobs_failed():
    processor, _ = make_processor(index_queue=FakeIndexQueue(raises=RuntimeError("queue down")))

    result = await processor.run([{"title": "t", "current_url": url(i)} for i in range(3)], "user-1")

    assert result.successful == 3
    assert result.indexed == 0
    assert result.indexing_failed == 3


async def test_indexing_disabled_skips_handoff():
    queue = FakeIndexQueue()
    processor, _ = make_processor(index_queue=queue, enable_indexing=False)

    result = await processor.run([{"title": "t", "current_url": url(1)}], "user-1")

    assert queue.calls == 0
    assert result.indexed == 0
    assert result.indexing_failed == 0


# ---------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------

async def test_large_batch_progress_is_monotonic_per_phase():
    events = []
    processor, _ = make_processor(titles={url(i): f"T{i}" for i in range(1000)})
    rows = [{"current_url": url(i)} for i in range(1000)]

    result = await processor.run(rows, "user-1", on_progress=events.append)

    assert result.successful == 1000

    by_phase = defaultdict(list)
    for event in events:
        by_phase[event.phase].append(event)

    assert list(by_phase) == [
        ImportPhase.ENRICHING,
        ImportPhase.VALIDATING,
        ImportPhase.INSERTING,
        ImportPhase.INDEXING,
        ImportPhase.COMPLETE,
    ]
    for phase, phase_events in by_phase.items():
        currents = [e.current for e in phase_events]
        assert currents == sorted(currents)
        assert len(set(currents)) == len(currents)
        total = phase_events[0].total
        assert all(e.total == total for e in phase_events)
        assert currents.count(total) == 1
        assert phase_events[-1].percentage == 100


async def test_progress_reports_running_error_count():
    events = []
    processor, _ = make_processor()
    rows = [{"current_url": "bad"}, {"current_url": url(1)}, {"current_url": "bad2"}]

    await processor.run(rows, "user-1", on_progress=events.append)

    validating = [e for e in events if e.phase == ImportPhase.VALIDATING]
    assert validating[-1].error_count == 2


# ---------------------------------------------------------------------
# Run-level outcomes
# ---------------------------------------------------------------------

async def test_stop_signal_abandons_before_next_phase():
    repo = FakeRepository()
    processor, fetcher = make_processor(repo, titles={url(1): "t"})

    with pytest.raises(ImportAbandoned):
        await processor.run([{"current_url": url(1)}], "user-1", should_stop=lambda: True)

    # The in-flight phase finished; nothing after it ran
    assert fetcher.calls == [url(1)]
    assert repo.items == {}
    assert processor.last_phase == ImportPhase.ERRORED


async def test_lost_connectivity_enters_errored():
    class DownRepository(FakeRepository):
        async def url_exists(self, url):
            raise PersistenceUnavailableError("Database unavailable during duplicate URL check")

    processor, _ = make_processor(DownRepository())

    with pytest.raises(PersistenceUnavailableError):
        await processor.run([{"title": "t", "current_url": url(1)}], "user-1")

    assert processor.last_phase == ImportPhase.ERRORED


async def test_missing_other_content_type_enters_errored():
    class NoCatalog(FakeRepository):
        async def load_content_types(self):
            raise ContentTypeConfigurationError("System 'Other' content type not found")

    processor, _ = make_processor(NoCatalog())

    with pytest.raises(ContentTypeConfigurationError):
        await processor.run([{"title": "t", "current_url": url(1)}], "user-1")

    assert processor.last_phase == ImportPhase.ERRORED


async def test_successful_run_ends_complete_and_stats_balance():
    processor, _ = make_processor(titles={url(0): "t"})
    rows = [{"current_url": url(i)} for i in range(4)]

    result = await processor.run(rows, "user-1")

    assert processor.last_phase == ImportPhase.COMPLETE
    stats = result.enrichment
    assert stats.attempted == stats.successful + stats.failed == 4


async def test_empty_batch_completes():
    processor, _ = make_processor()

    result = await processor.run([], "user-1")

    assert result.successful == 0
    assert result.failed == 0
    assert processor.last_phase == ImportPhase.COMPLETE
