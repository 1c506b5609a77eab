"""
Archival Store
==============

Single owner of persisted feeds and items. The scheduler and renderers go
through this facade; it composes the feed and item repositories and adds
the maintenance operations (purges and vacuum).

Items are never deleted when they disappear upstream: they are archived,
and only ``purge_archived`` removes them once they are old enough.
"""

from datetime import datetime
from typing import List, Optional, Iterable

from ..database.connection import DatabaseConnection
from ..database.models import (
    Feed,
    Item,
    ItemStatus,
    ItemDelta,
    AppliedDelta,
    FeedWithItems,
)
from ..utils.logging import get_logger_for_component, PerformanceLogger
from .feed_repository import FeedRepository
from .item_repository import ItemRepository


class ArchivalStore:
    """Persisted record of feeds, active items and archived items."""

    def __init__(self, db_connection: DatabaseConnection):
        self.db = db_connection
        self.feeds = FeedRepository(db_connection)
        self.items = ItemRepository(db_connection)
        self.logger = get_logger_for_component("archival_store")

    # Reconciliation inputs

    def get_active_items(self, feed_url: str) -> List[Item]:
        return self.items.get_items_by_status(feed_url, ItemStatus.ACTIVE)

    def get_archived_items(self, feed_url: str) -> List[Item]:
        """Archived items of a feed, used for resurrection lookups."""
        return self.items.get_items_by_status(feed_url, ItemStatus.ARCHIVED)

    # Writes

    def apply_delta(self, feed_url: str, delta: ItemDelta, now: datetime) -> AppliedDelta:
        """Commit a feed's delta atomically; raises StorageError after rollback."""
        return self.items.apply_delta(feed_url, delta, now)

    def upsert_feed_meta(self, feed: Feed) -> None:
        """Record fetch bookkeeping in a transaction of its own."""
        self.feeds.upsert_feed_meta(feed)

    def purge_archived(self, older_than: datetime, min_items_keep: int = 0) -> int:
        """Delete archived items with archived-at strictly before ``older_than``.

        Args:
            older_than: Cutoff time
            min_items_keep: Newest items per feed that survive the purge

        Returns:
            Number of deleted items
        """
        return self.items.delete_archived_before(older_than, min_items_keep=min_items_keep)

    def purge_orphaned_feeds(self, keep_urls: Iterable[str]) -> int:
        """Delete feeds absent from the current subscription set, with their items."""
        removed = self.feeds.delete_feeds_not_in(keep_urls)
        if removed:
            self.logger.info(f"Removed {len(removed)} feeds missing from the subscription list")
        return len(removed)

    def vacuum(self) -> None:
        """Reclaim space after purges."""
        with PerformanceLogger(self.logger, "database vacuum"):
            self.db.vacuum_database()

    # Read side

    def get_feed(self, url: str) -> Optional[Feed]:
        return self.feeds.get_feed(url)

    def get_all_feeds(self) -> List[Feed]:
        return self.feeds.get_all_feeds()

    def get_feed_urls(self) -> List[str]:
        return self.feeds.get_feed_urls()

    def get_items_for_feed(
        self,
        url: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 0,
        include_archived: bool = True,
    ) -> List[Item]:
        """Items of one feed, newest first, optionally bounded in time."""
        return self.items.get_items_for_feed(
            url, since=since, until=until, limit=limit, include_archived=include_archived
        )

    def get_feeds_with_items(
        self,
        start: datetime,
        end: datetime,
        feed_urls: Optional[Iterable[str]] = None,
    ) -> List[FeedWithItems]:
        """Feeds active within a time range together with their items in that range.

        Args:
            start: Range start (inclusive)
            end: Range end (inclusive)
            feed_urls: Restrict to these feeds (None means all)

        Returns:
            Feeds newest first, each with its items newest first
        """
        feeds = self.feeds.get_feeds_in_range(start, end, feed_urls)
        if not feeds:
            return []

        grouped = self.items.get_items_for_feeds([feed.url for feed in feeds], start, end)
        return [FeedWithItems(feed=feed, items=grouped.get(feed.url, [])) for feed in feeds]
