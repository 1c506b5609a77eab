"""
Tests for the Fetch Scheduler
=============================

Pipelines run against a real temporary store with a scripted fetcher and a
manually advanced clock.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from feedkeeper.config.settings import FeedKeeperSettings
from feedkeeper.database.models import ItemStatus, Outcome
from feedkeeper.processing.results import JobState
from feedkeeper.processing.scheduler import FetchScheduler
from feedkeeper.utils.exceptions import (
    ConfigurationError,
    ErrorCode,
    FetchCancelledError,
    HTTPError,
    NetworkError,
    ParseError,
    StorageError,
)

from conftest import build_rss, modified, not_modified, failed, FEED_URL


OTHER_URL = "https://other.example.net/rss"


def item(guid, title=None):
    return {"guid": guid, "title": title or f"Item {guid}", "link": f"https://example.com/{guid}"}


@pytest.fixture
def scheduler(store, scripted_fetcher, clock):
    return FetchScheduler(store, fetcher=scripted_fetcher, concurrency=4, clock=clock)


def guids(store, url, status):
    items = store.get_active_items(url) if status == ItemStatus.ACTIVE else store.get_archived_items(url)
    return sorted(i.guid for i in items)


class TestSyncCycles:

    @pytest.mark.asyncio
    async def test_three_cycle_archive_and_resurrect(self, scheduler, scripted_fetcher, store, clock):
        scripted_fetcher.script(
            FEED_URL,
            modified(FEED_URL, build_rss([item("a"), item("b"), item("c")])),
            modified(FEED_URL, build_rss([item("b"), item("c", "C edited"), item("d")])),
            modified(FEED_URL, build_rss([item("a"), item("b"), item("c", "C edited"), item("d")])),
        )

        first = await scheduler.run([FEED_URL])
        outcome = first.get(FEED_URL)
        assert outcome.outcome == Outcome.COMMITTED
        assert outcome.items_inserted == 3
        assert guids(store, FEED_URL, ItemStatus.ACTIVE) == ["a", "b", "c"]

        clock.advance(hours=1)
        second = (await scheduler.run([FEED_URL])).get(FEED_URL)
        assert (second.items_inserted, second.items_updated, second.items_archived) == (1, 1, 1)
        assert guids(store, FEED_URL, ItemStatus.ACTIVE) == ["b", "c", "d"]
        assert guids(store, FEED_URL, ItemStatus.ARCHIVED) == ["a"]

        clock.advance(hours=1)
        third = (await scheduler.run([FEED_URL])).get(FEED_URL)
        assert third.items_resurrected == 1
        assert third.items_inserted == 0
        assert guids(store, FEED_URL, ItemStatus.ACTIVE) == ["a", "b", "c", "d"]
        assert guids(store, FEED_URL, ItemStatus.ARCHIVED) == []

        restored = store.items.get_item(FEED_URL, "a")
        assert restored.first_seen < restored.last_seen

    @pytest.mark.asyncio
    async def test_304_reuses_validators_and_changes_nothing(self, scheduler, scripted_fetcher, store, clock):
        scripted_fetcher.script(
            FEED_URL,
            modified(FEED_URL, build_rss([item("a")]), etag='"e1"'),
            not_modified(FEED_URL),
        )

        await scheduler.run([FEED_URL])
        before = store.get_active_items(FEED_URL)

        clock.advance(minutes=5)
        summary = await scheduler.run([FEED_URL])

        assert summary.get(FEED_URL).outcome == Outcome.NOT_MODIFIED
        assert scripted_fetcher.calls[1]["validators"].etag == '"e1"'
        assert store.get_active_items(FEED_URL) == before

        feed = store.get_feed(FEED_URL)
        assert feed.etag == '"e1"'
        assert feed.last_outcome == Outcome.NOT_MODIFIED
        assert feed.last_fetched_at == clock.now
        assert feed.error_count == 0

    @pytest.mark.asyncio
    async def test_force_passes_through_to_fetcher(self, store, scripted_fetcher, clock):
        scheduler = FetchScheduler(store, fetcher=scripted_fetcher, force=True,
                                   max_age_seconds=3600, clock=clock)
        scripted_fetcher.script(
            FEED_URL,
            modified(FEED_URL, build_rss([item("a")]), etag='"e1"'),
            modified(FEED_URL, build_rss([item("a")]), etag='"e1"'),
        )

        await scheduler.run([FEED_URL])
        summary = await scheduler.run([FEED_URL])

        assert summary.get(FEED_URL).outcome == Outcome.COMMITTED
        assert [call["force"] for call in scripted_fetcher.calls] == [True, True]

    @pytest.mark.asyncio
    async def test_max_age_skips_recent_feeds(self, store, scripted_fetcher, clock):
        scheduler = FetchScheduler(store, fetcher=scripted_fetcher, max_age_seconds=3600, clock=clock)
        scripted_fetcher.script(
            FEED_URL,
            modified(FEED_URL, build_rss([item("a")])),
            not_modified(FEED_URL),
        )

        await scheduler.run([FEED_URL])
        fetched_at = store.get_feed(FEED_URL).last_fetched_at

        clock.advance(minutes=10)
        skipped = await scheduler.run([FEED_URL])
        assert skipped.get(FEED_URL).outcome == Outcome.SKIPPED
        assert len(scripted_fetcher.calls) == 1
        assert store.get_feed(FEED_URL).last_fetched_at == fetched_at

        clock.advance(hours=2)
        refreshed = await scheduler.run([FEED_URL])
        assert refreshed.get(FEED_URL).outcome == Outcome.NOT_MODIFIED
        assert len(scripted_fetcher.calls) == 2


class TestFailureIsolation:

    @pytest.mark.asyncio
    async def test_one_failing_feed_does_not_affect_others(self, scheduler, scripted_fetcher, store):
        scripted_fetcher.script(FEED_URL, modified(FEED_URL, build_rss([item("a")])))
        scripted_fetcher.script(
            OTHER_URL, failed(OTHER_URL, HTTPError("HTTP 500", status=500, feed_url=OTHER_URL))
        )

        summary = await scheduler.run([FEED_URL, OTHER_URL])

        assert summary.get(FEED_URL).outcome == Outcome.COMMITTED
        bad = summary.get(OTHER_URL)
        assert bad.outcome == Outcome.FAILED
        assert bad.status == 500
        assert summary.exit_code == 0

        feed = store.get_feed(OTHER_URL)
        assert feed.error_count == 1
        assert feed.last_outcome == Outcome.FAILED
        assert "500" in feed.last_error

    @pytest.mark.asyncio
    async def test_all_failed_sets_exit_code(self, scheduler, scripted_fetcher):
        scripted_fetcher.script(FEED_URL, failed(FEED_URL, NetworkError("refused", feed_url=FEED_URL)))

        summary = await scheduler.run([FEED_URL])

        assert summary.all_failed
        assert summary.exit_code == 1

    @pytest.mark.asyncio
    async def test_parse_failure_keeps_items_and_validators(self, scheduler, scripted_fetcher, store, clock):
        scripted_fetcher.script(
            FEED_URL,
            modified(FEED_URL, build_rss([item("a"), item("b")]), etag='"e1"'),
            modified(FEED_URL, b"<html>maintenance page</html>", etag='"e2"'),
        )

        await scheduler.run([FEED_URL])
        clock.advance(hours=1)
        summary = await scheduler.run([FEED_URL])

        outcome = summary.get(FEED_URL)
        assert outcome.outcome == Outcome.FAILED
        assert isinstance(outcome.error, ParseError)
        assert guids(store, FEED_URL, ItemStatus.ACTIVE) == ["a", "b"]

        feed = store.get_feed(FEED_URL)
        assert feed.etag == '"e1"'
        assert feed.error_count == 1
        assert feed.last_fetched_at == clock.now

    @pytest.mark.asyncio
    async def test_truncated_body_leaves_active_items_untouched(self, scheduler, scripted_fetcher, store, clock):
        body = build_rss([item(str(n)) for n in range(1, 6)])
        truncated = body[: body.index(b"<title>Item 3") + 10]
        scripted_fetcher.script(
            FEED_URL,
            modified(FEED_URL, body, etag='"e1"'),
            modified(FEED_URL, truncated, etag='"e2"'),
        )

        await scheduler.run([FEED_URL])
        clock.advance(hours=1)
        summary = await scheduler.run([FEED_URL])

        outcome = summary.get(FEED_URL)
        assert outcome.outcome == Outcome.FAILED
        assert isinstance(outcome.error, ParseError)
        assert outcome.items_archived == 0
        assert guids(store, FEED_URL, ItemStatus.ACTIVE) == ["1", "2", "3", "4", "5"]
        assert guids(store, FEED_URL, ItemStatus.ARCHIVED) == []
        assert store.get_feed(FEED_URL).etag == '"e1"'

    @pytest.mark.asyncio
    async def test_bare_304_keeps_stored_validators(self, scheduler, scripted_fetcher, store, clock):
        scripted_fetcher.script(
            FEED_URL,
            modified(FEED_URL, build_rss([item("a")]), etag='"e1"',
                     last_modified="Fri, 01 Mar 2024 12:00:00 GMT"),
            not_modified(FEED_URL),
            not_modified(FEED_URL, etag='"e2"'),
        )

        await scheduler.run([FEED_URL])
        clock.advance(minutes=5)
        await scheduler.run([FEED_URL])

        feed = store.get_feed(FEED_URL)
        assert feed.etag == '"e1"'
        assert feed.last_modified == "Fri, 01 Mar 2024 12:00:00 GMT"

        clock.advance(minutes=5)
        await scheduler.run([FEED_URL])

        feed = store.get_feed(FEED_URL)
        assert scripted_fetcher.calls[2]["validators"].etag == '"e1"'
        assert feed.etag == '"e2"'
        assert feed.last_modified == "Fri, 01 Mar 2024 12:00:00 GMT"

    @pytest.mark.asyncio
    async def test_error_count_resets_on_success(self, scheduler, scripted_fetcher, store, clock):
        scripted_fetcher.script(
            FEED_URL,
            failed(FEED_URL, NetworkError("refused", feed_url=FEED_URL)),
            failed(FEED_URL, NetworkError("refused", feed_url=FEED_URL)),
            modified(FEED_URL, build_rss([item("a")])),
        )

        for _ in range(2):
            await scheduler.run([FEED_URL])
            clock.advance(minutes=1)
        assert store.get_feed(FEED_URL).error_count == 2

        await scheduler.run([FEED_URL])
        feed = store.get_feed(FEED_URL)
        assert feed.error_count == 0
        assert feed.last_error is None

    @pytest.mark.asyncio
    async def test_storage_failure_still_records_meta(self, scheduler, scripted_fetcher, store, monkeypatch):
        scripted_fetcher.script(FEED_URL, modified(FEED_URL, build_rss([item("a")]), etag='"e1"'))

        def broken_apply(*args, **kwargs):
            raise StorageError("disk I/O error", error_code=ErrorCode.DATABASE_TRANSACTION)

        monkeypatch.setattr(store, "apply_delta", broken_apply)

        summary = await scheduler.run([FEED_URL])

        outcome = summary.get(FEED_URL)
        assert outcome.outcome == Outcome.FAILED
        assert isinstance(outcome.error, StorageError)
        assert store.get_active_items(FEED_URL) == []

        feed = store.get_feed(FEED_URL)
        assert feed.error_count == 1
        assert feed.etag is None

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_failed_outcome(self, scheduler, scripted_fetcher):
        scripted_fetcher.script(FEED_URL, RuntimeError("fetcher exploded"))

        summary = await scheduler.run([FEED_URL])

        outcome = summary.get(FEED_URL)
        assert outcome.outcome == Outcome.FAILED
        assert outcome.error.error_code == ErrorCode.UNEXPECTED
        assert scheduler.states[FEED_URL] == JobState.FAILED


class TestRunControl:

    @pytest.mark.asyncio
    async def test_duplicate_urls_run_once(self, scheduler, scripted_fetcher):
        scripted_fetcher.script(FEED_URL, modified(FEED_URL, build_rss([item("a")])))

        summary = await scheduler.run([FEED_URL, FEED_URL, "HTTPS://EXAMPLE.COM/feed.xml#top"])

        assert [o.url for o in summary.outcomes] == [FEED_URL]
        assert len(scripted_fetcher.calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_url_fails_without_fetching(self, scheduler, scripted_fetcher):
        scripted_fetcher.script(FEED_URL, modified(FEED_URL, build_rss([item("a")])))

        summary = await scheduler.run(["ftp://example.com/feed", FEED_URL])

        assert summary.total_feeds == 2
        invalid = summary.outcomes[0]
        assert invalid.outcome == Outcome.FAILED
        assert invalid.error.error_code == ErrorCode.FEED_INVALID_URL
        assert [call["url"] for call in scripted_fetcher.calls] == [FEED_URL]

    @pytest.mark.asyncio
    async def test_empty_run(self, scheduler):
        summary = await scheduler.run([])

        assert summary.outcomes == []
        assert summary.exit_code == 0

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, store, scripted_fetcher, clock):
        scheduler = FetchScheduler(store, fetcher=scripted_fetcher, concurrency=3, clock=clock)
        urls = [f"https://feeds{n}.example.com/rss" for n in range(10)]
        for url in urls:
            scripted_fetcher.script(url, modified(url, build_rss([item("a")])))

        summary = await scheduler.run(urls)

        assert summary.committed == 10
        assert 1 <= scripted_fetcher.max_in_flight <= 3

    @pytest.mark.asyncio
    async def test_deadline_cancels_unfinished_feeds(self, scheduler, scripted_fetcher, store):
        scripted_fetcher.script(FEED_URL, modified(FEED_URL, build_rss([item("a")])))
        scripted_fetcher.script(OTHER_URL, asyncio.Event())

        summary = await scheduler.run([FEED_URL, OTHER_URL], deadline=0.3)

        assert summary.cancelled
        assert summary.get(FEED_URL).outcome == Outcome.COMMITTED
        assert guids(store, FEED_URL, ItemStatus.ACTIVE) == ["a"]

        stuck = summary.get(OTHER_URL)
        assert stuck.outcome == Outcome.FAILED
        assert isinstance(stuck.error, FetchCancelledError)

        feed = store.get_feed(OTHER_URL)
        assert feed.last_outcome == Outcome.FAILED
        assert feed.error_count == 0

    @pytest.mark.asyncio
    async def test_cancel_event_stops_run(self, scheduler, scripted_fetcher):
        scripted_fetcher.script(FEED_URL, asyncio.Event())
        cancel_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.1, cancel_event.set)

        summary = await scheduler.run([FEED_URL], cancel_event=cancel_event)

        assert summary.cancelled
        assert summary.get(FEED_URL).error.error_code == ErrorCode.FEED_CANCELLED
        assert summary.exit_code == 1

    @pytest.mark.asyncio
    async def test_every_job_ends_in_terminal_state(self, scheduler, scripted_fetcher):
        scripted_fetcher.script(FEED_URL, modified(FEED_URL, build_rss([item("a")])))
        scripted_fetcher.script(OTHER_URL, not_modified(OTHER_URL))

        await scheduler.run([FEED_URL, OTHER_URL])

        assert scheduler.states[FEED_URL] == JobState.COMMITTED
        assert scheduler.states[OTHER_URL] == JobState.NOT_MODIFIED
        assert all(state.is_terminal for state in scheduler.states.values())


class TestUnfurlNotification:

    @pytest.mark.asyncio
    async def test_new_items_with_http_links_are_submitted(self, store, scripted_fetcher, clock):
        sink = MagicMock()
        scheduler = FetchScheduler(store, fetcher=scripted_fetcher, unfurl_sink=sink, clock=clock)
        scripted_fetcher.script(
            FEED_URL,
            modified(FEED_URL, build_rss([item("a"), {"guid": "nolink", "title": "No link"}])),
            modified(FEED_URL, build_rss([item("a"), item("b")])),
        )

        await scheduler.run([FEED_URL])
        first_links = {call.args[1] for call in sink.submit.call_args_list}
        assert first_links == {"https://example.com/a"}

        clock.advance(hours=1)
        sink.submit.reset_mock()
        await scheduler.run([FEED_URL])

        submitted = [call.args for call in sink.submit.call_args_list]
        assert len(submitted) == 1
        item_id, link = submitted[0]
        assert link == "https://example.com/b"
        assert item_id == store.items.get_item(FEED_URL, "b").id


class TestConstruction:

    @pytest.mark.parametrize(
        "kwargs",
        [{"concurrency": 0}, {"timeout_seconds": 0}, {"max_age_seconds": -1}],
    )
    def test_invalid_configuration_rejected(self, store, kwargs):
        with pytest.raises(ConfigurationError):
            FetchScheduler(store, **kwargs)

    def test_from_settings_applies_overrides(self, store):
        settings = FeedKeeperSettings(fetch={"concurrency": 8, "max_items": 50})

        scheduler = FetchScheduler.from_settings(store, settings, concurrency=2, force=None)

        assert scheduler.concurrency == 2
        assert scheduler.parser.max_items == 50
        assert scheduler.force is False
