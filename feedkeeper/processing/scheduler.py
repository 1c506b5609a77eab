"""
Fetch Scheduler
===============

Drives a set of feeds through fetch, parse, reconcile and commit with at
most ``concurrency`` feed pipelines running at once.

Each feed is isolated: network, HTTP, parse and storage failures become a
FAILED outcome for that feed only. Feed bookkeeping (fetch time, status,
error count) is written after every attempt, independently of whether the
item delta committed. When the run deadline passes or the cancel event is
set, unfinished jobs are cancelled and reported as FAILED; feeds that
already committed keep their results.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Protocol

import aiohttp

from ..config.settings import FeedKeeperSettings, DEFAULT_USER_AGENT
from ..database.models import Feed, Outcome
from ..storage.archival_store import ArchivalStore
from ..utils.logging import get_logger_for_component, PerformanceLogger
from ..utils.exceptions import (
    ConfigurationError,
    FeedError,
    FeedKeeperError,
    FetchCancelledError,
    ParseError,
    StorageError,
    handle_exception,
)
from ..utils.timestamps import utc_now
from ..utils.validators import URLValidator
from .conditional_fetcher import ConditionalFetcher, FetchKind, FetchResult
from .feed_parser import FeedParser
from .reconciler import Reconciler
from .results import FeedOutcome, JobState, RunSummary, TRANSITIONS


class UnfurlSink(Protocol):
    """Receiver of newly inserted items; must not block."""

    def submit(self, item_id: int, url: str) -> bool:
        ...


class FetchScheduler:
    """Bounded-concurrency runner of per-feed sync pipelines."""

    def __init__(
        self,
        store: ArchivalStore,
        fetcher: Optional[ConditionalFetcher] = None,
        parser: Optional[FeedParser] = None,
        reconciler: Optional[Reconciler] = None,
        concurrency: int = 32,
        timeout_seconds: float = 30.0,
        max_age_seconds: float = 0.0,
        force: bool = False,
        max_items: int = 100,
        user_agent: str = DEFAULT_USER_AGENT,
        unfurl_sink: Optional[UnfurlSink] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize scheduler.

        Args:
            store: Store handle shared by every pipeline of the run
            fetcher: Conditional fetcher (built from timeout/user_agent if omitted)
            parser: Feed parser (built from max_items if omitted)
            reconciler: Reconciler
            concurrency: Maximum feed pipelines running at once
            timeout_seconds: Per-feed request timeout
            max_age_seconds: Skip feeds fetched more recently than this (0 disables)
            force: Ignore cache validators and the max-age skip
            max_items: Items kept per fetched feed (0 means all)
            user_agent: User-Agent header
            unfurl_sink: Receiver of newly inserted (item_id, url) pairs
            clock: Source of cycle timestamps

        Raises:
            ConfigurationError: If concurrency or timeout are not positive
        """
        if not isinstance(concurrency, int) or concurrency < 1:
            raise ConfigurationError(
                f"Concurrency must be a positive integer, got {concurrency!r}",
                config_key="fetch.concurrency",
            )
        if timeout_seconds is None or timeout_seconds <= 0:
            raise ConfigurationError(
                f"Timeout must be positive, got {timeout_seconds!r}",
                config_key="fetch.timeout_seconds",
            )
        if max_age_seconds < 0:
            raise ConfigurationError(
                f"Max age must not be negative, got {max_age_seconds!r}",
                config_key="fetch.max_age_seconds",
            )

        self.store = store
        self.concurrency = concurrency
        self.max_age = timedelta(seconds=max_age_seconds)
        self.force = force
        self.fetcher = fetcher or ConditionalFetcher(
            timeout_seconds=timeout_seconds,
            user_agent=user_agent,
            max_connections=concurrency,
        )
        self.parser = parser or FeedParser(max_items=max_items)
        self.reconciler = reconciler or Reconciler()
        self.unfurl_sink = unfurl_sink
        self.clock = clock
        self.logger = get_logger_for_component("scheduler")

        self.states: Dict[str, JobState] = {}
        self._outcomes: Dict[str, FeedOutcome] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None

    @classmethod
    def from_settings(
        cls,
        store: ArchivalStore,
        settings: FeedKeeperSettings,
        unfurl_sink: Optional[UnfurlSink] = None,
        **overrides,
    ) -> "FetchScheduler":
        """Build a scheduler from the fetch settings section."""
        fetch = settings.fetch
        options = {
            "concurrency": fetch.concurrency,
            "timeout_seconds": fetch.timeout_seconds,
            "max_age_seconds": fetch.max_age_seconds,
            "force": fetch.force,
            "max_items": fetch.max_items,
            "user_agent": fetch.user_agent,
        }
        options.update({k: v for k, v in overrides.items() if v is not None})
        return cls(store, unfurl_sink=unfurl_sink, **options)

    async def run(
        self,
        feed_urls: Iterable[str],
        deadline: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunSummary:
        """Run one sync cycle over the given feeds.

        Args:
            feed_urls: Feed URLs; duplicates are dropped, first order kept
            deadline: Overall run deadline in seconds from now
            cancel_event: Setting this event cancels unfinished jobs

        Returns:
            RunSummary with exactly one outcome per distinct feed URL
        """
        summary = RunSummary(started_at=self.clock())
        self.states = {}
        self._outcomes = {}
        self._semaphore = asyncio.Semaphore(self.concurrency)

        urls = self._prepare_urls(feed_urls)
        self.logger.info(
            f"Starting fetch of {len(urls)} feeds (concurrency={self.concurrency}, "
            f"force={self.force}, max_age={self.max_age.total_seconds():.0f}s)"
        )

        with PerformanceLogger(self.logger, "fetch run", feed_count=len(urls)):
            if urls:
                async with self.fetcher.get_session() as session:
                    summary.cancelled = await self._run_jobs(urls, session, deadline, cancel_event)

        for url in urls:
            if url not in self._outcomes:
                # Cancelled before the job got to run at all.
                self._record(FeedOutcome(
                    url=url,
                    outcome=Outcome.FAILED,
                    error=FetchCancelledError("Run ended before the feed was fetched", feed_url=url),
                ))

        summary.outcomes = [self._outcomes[url] for url in urls]
        summary.finished_at = self.clock()

        self.logger.info(
            f"Fetch complete: {summary.committed} committed, {summary.not_modified} not modified, "
            f"{summary.skipped} skipped, {summary.failed} failed; "
            f"{summary.items_inserted} new, {summary.items_updated} updated, "
            f"{summary.items_archived} archived, {summary.items_resurrected} resurrected items"
        )
        return summary

    def _prepare_urls(self, feed_urls: Iterable[str]) -> List[str]:
        """Canonicalize and de-duplicate URLs; invalid ones fail immediately."""
        urls: List[str] = []
        seen = set()

        for raw in feed_urls:
            try:
                url = URLValidator.validate_feed_url(raw)
            except FeedError as e:
                key = (raw or "").strip() or repr(raw)
                if key not in self._outcomes:
                    self.logger.warning(f"Skipping invalid feed URL {raw!r}: {e}")
                    self._outcomes[key] = FeedOutcome(url=key, outcome=Outcome.FAILED, error=e)
                    urls.append(key)
                continue

            if url in seen:
                continue
            seen.add(url)
            urls.append(url)

        return urls

    async def _run_jobs(
        self,
        urls: List[str],
        session: aiohttp.ClientSession,
        deadline: Optional[float],
        cancel_event: Optional[asyncio.Event],
    ) -> bool:
        """Run jobs until all finish, the deadline passes or cancellation.

        Returns:
            True if unfinished jobs had to be cancelled
        """
        loop = asyncio.get_running_loop()
        tasks = [
            asyncio.create_task(self._run_job(url, session), name=f"feed:{url}")
            for url in urls
            if url not in self._outcomes
        ]
        pending = set(tasks)
        stop_at = loop.time() + deadline if deadline is not None else None
        cancel_waiter = (
            asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        )
        interrupted = False

        try:
            while pending:
                timeout = None
                if stop_at is not None:
                    timeout = stop_at - loop.time()
                    if timeout <= 0:
                        self.logger.warning(
                            f"Run deadline of {deadline}s reached with {len(pending)} feeds unfinished"
                        )
                        interrupted = True
                        break

                waiting = set(pending)
                if cancel_waiter is not None:
                    waiting.add(cancel_waiter)

                done, _ = await asyncio.wait(
                    waiting, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
                pending -= done

                if cancel_waiter is not None and cancel_waiter in done:
                    if pending:
                        self.logger.warning(
                            f"Run cancelled with {len(pending)} feeds unfinished"
                        )
                        interrupted = True
                    break
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

            for task in pending:
                task.cancel()

            # Cancelled jobs record their own outcome before re-raising.
            await asyncio.gather(*tasks, return_exceptions=True)

        return interrupted

    async def _run_job(self, url: str, session: aiohttp.ClientSession) -> None:
        """Run one feed's pipeline and record its outcome."""
        self.states[url] = JobState.PENDING
        started = utc_now()

        try:
            async with self._semaphore:
                outcome = await self._process_feed(url, session)

        except asyncio.CancelledError:
            error = FetchCancelledError("Fetch cancelled before completion", feed_url=url)
            was_fetching = self.states.get(url) == JobState.FETCHING
            self.states[url] = JobState.FAILED
            self._record(FeedOutcome(url=url, outcome=Outcome.FAILED, error=error))
            if was_fetching:
                self._write_cancelled_meta(url, error)
            raise

        except Exception as e:
            error = handle_exception(e, self.logger, "feed job", {"feed_url": url})
            self.states[url] = JobState.FAILED
            outcome = FeedOutcome(url=url, outcome=Outcome.FAILED, error=error)

        outcome.duration_seconds = (utc_now() - started).total_seconds()
        self._record(outcome)

    async def _process_feed(self, url: str, session: aiohttp.ClientSession) -> FeedOutcome:
        """Fetch, parse, reconcile and commit one feed."""
        logger = self.logger.for_feed(url)
        now = self.clock()

        try:
            previous = self.store.get_feed(url)
        except StorageError as e:
            self._advance(url, JobState.FAILED)
            return FeedOutcome(url=url, outcome=Outcome.FAILED, error=e)

        if self._is_fresh(previous, now):
            self._advance(url, JobState.SKIPPED)
            logger.debug(f"Skipping {url}: fetched at {previous.last_fetched_at}")
            return FeedOutcome(url=url, outcome=Outcome.SKIPPED, status=previous.last_status)

        self._advance(url, JobState.FETCHING)
        validators = previous.validators if previous else None
        result = await self.fetcher.fetch(url, validators, session, force=self.force)

        feed = previous or Feed(url=url, created_at=now)
        feed = feed.model_copy(update={"last_fetched_at": now, "last_status": result.status})

        if result.kind == FetchKind.FAILED:
            return self._fail(url, feed, result.error, status=result.status)

        if result.kind == FetchKind.NOT_MODIFIED:
            self._advance(url, JobState.NOT_MODIFIED)
            # A 304 may refresh validators but never clears them
            self._write_meta(feed.model_copy(update={
                "etag": result.validators.etag or feed.etag,
                "last_modified": result.validators.last_modified or feed.last_modified,
                "last_success_at": now,
                "last_outcome": Outcome.NOT_MODIFIED,
                "error_count": 0,
                "last_error": None,
            }))
            logger.debug(f"Feed not modified: {url}")
            return FeedOutcome(url=url, outcome=Outcome.NOT_MODIFIED, status=result.status)

        return self._commit(url, feed, result, now)

    def _commit(self, url: str, feed: Feed, result: FetchResult, now: datetime) -> FeedOutcome:
        """Parse the body, reconcile against stored items and apply the delta."""
        self._advance(url, JobState.PARSING)
        try:
            parsed = self.parser.parse(result.body, result.content_type, feed_url=url)
        except ParseError as e:
            return self._fail(url, feed, e, status=result.status)

        self._advance(url, JobState.RECONCILING)
        try:
            delta = self.reconciler.reconcile(
                url,
                parsed.items,
                self.store.get_active_items(url),
                self.store.get_archived_items(url),
            )
            applied = self.store.apply_delta(url, delta, now)
        except StorageError as e:
            return self._fail(url, feed, e, status=result.status)

        self._advance(url, JobState.COMMITTED)
        self._write_meta(feed.model_copy(update={
            "title": parsed.title or feed.title,
            "description": parsed.description or feed.description,
            "link": parsed.link or feed.link,
            "etag": result.validators.etag,
            "last_modified": result.validators.last_modified,
            "last_success_at": now,
            "last_outcome": Outcome.COMMITTED,
            "error_count": 0,
            "last_error": None,
            "latest_item_at": now if applied.inserted else feed.latest_item_at,
        }))

        self._notify_unfurl(applied.inserted)

        return FeedOutcome(
            url=url,
            outcome=Outcome.COMMITTED,
            items_inserted=len(applied.inserted),
            items_updated=applied.updated,
            items_archived=applied.archived,
            items_resurrected=applied.resurrected,
            status=result.status,
        )

    def _fail(self, url: str, feed: Feed, error: FeedKeeperError,
              status: Optional[int] = None) -> FeedOutcome:
        """Record a failed attempt; stored validators are kept for the next run."""
        self._advance(url, JobState.FAILED)
        self.logger.warning(f"Feed {url} failed: {error}", extra={"feed_url": url})
        self._write_meta(feed.model_copy(update={
            "last_outcome": Outcome.FAILED,
            "error_count": feed.error_count + 1,
            "last_error": str(error),
        }))
        return FeedOutcome(url=url, outcome=Outcome.FAILED, status=status, error=error)

    def _write_meta(self, feed: Feed) -> None:
        try:
            self.store.upsert_feed_meta(feed)
        except StorageError as e:
            # Item results stand; the bookkeeping loss is reported, not fatal.
            self.logger.error(f"Failed to record fetch metadata for {feed.url}: {e}",
                              extra=e.to_dict())

    def _write_cancelled_meta(self, url: str, error: FetchCancelledError) -> None:
        """Note the interrupted attempt without counting it as a feed error."""
        try:
            previous = self.store.get_feed(url)
        except StorageError as e:
            self.logger.error(f"Failed to read feed {url} after cancellation: {e}")
            return

        feed = previous or Feed(url=url, created_at=self.clock())
        self._write_meta(feed.model_copy(update={
            "last_fetched_at": self.clock(),
            "last_outcome": Outcome.FAILED,
            "last_error": str(error),
        }))

    def _notify_unfurl(self, inserted) -> None:
        if self.unfurl_sink is None:
            return
        for item in inserted:
            if URLValidator.is_http_url(item.link):
                self.unfurl_sink.submit(item.item_id, item.link)

    def _is_fresh(self, previous: Optional[Feed], now: datetime) -> bool:
        """Max-age pre-filter: True when the feed was fetched recently enough."""
        if self.force or not self.max_age or previous is None:
            return False
        if previous.last_fetched_at is None:
            return False
        return now - previous.last_fetched_at < self.max_age

    def _advance(self, url: str, state: JobState) -> None:
        current = self.states.get(url, JobState.PENDING)
        if state not in TRANSITIONS.get(current, set()):
            raise RuntimeError(f"Illegal job transition for {url}: {current.value} -> {state.value}")
        self.states[url] = state
        self.logger.debug(f"{url}: {current.value} -> {state.value}")

    def _record(self, outcome: FeedOutcome) -> None:
        self._outcomes[outcome.url] = outcome
