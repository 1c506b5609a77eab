"""
Feed Repository
===============

Repository for feed records: fetch bookkeeping upserts, lookups for the
scheduler and renderers, and removal of feeds that are no longer
subscribed.
"""

import sqlite3
from datetime import datetime
from typing import List, Optional, Iterable

from ..database.connection import DatabaseConnection
from ..database.models import Feed
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import StorageError, ErrorCode
from ..utils.timestamps import to_db_timestamp, utc_now


class FeedRepository:
    """Repository for managing feed data in the database."""

    def __init__(self, db_connection: DatabaseConnection):
        """Initialize feed repository.

        Args:
            db_connection: Database connection manager
        """
        self.db = db_connection
        self.logger = get_logger_for_component("feed_repository")

    def get_feed(self, url: str) -> Optional[Feed]:
        """Get feed by URL.

        Args:
            url: Feed URL

        Returns:
            Feed object if found, None otherwise

        Raises:
            StorageError: If database operation fails
        """
        try:
            with self.db.get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM feeds WHERE url = ?", (url,)
                ).fetchone()

                return self._row_to_feed(row) if row else None

        except sqlite3.Error as e:
            self.logger.error(f"Failed to get feed {url}: {e}")
            raise StorageError(f"Failed to get feed {url}: {e}") from e

    def get_all_feeds(self) -> List[Feed]:
        """Get all stored feeds ordered by URL."""
        try:
            with self.db.get_connection() as conn:
                rows = conn.execute("SELECT * FROM feeds ORDER BY url").fetchall()
                return [self._row_to_feed(row) for row in rows]

        except sqlite3.Error as e:
            self.logger.error(f"Failed to get feeds: {e}")
            raise StorageError(f"Failed to get feeds: {e}") from e

    def get_feed_urls(self) -> List[str]:
        """Get URLs of all stored feeds ordered by URL."""
        try:
            with self.db.get_connection() as conn:
                rows = conn.execute("SELECT url FROM feeds ORDER BY url").fetchall()
                return [row["url"] for row in rows]

        except sqlite3.Error as e:
            self.logger.error(f"Failed to get feed URLs: {e}")
            raise StorageError(f"Failed to get feed URLs: {e}") from e

    def get_feeds_in_range(
        self,
        start: datetime,
        end: datetime,
        feed_urls: Optional[Iterable[str]] = None,
    ) -> List[Feed]:
        """Get feeds whose newest item (or last success) falls within a range.

        Feeds are ordered newest first.
        """
        query = """
            SELECT * FROM feeds
            WHERE COALESCE(latest_item_at, last_success_at) >= ?
              AND COALESCE(latest_item_at, last_success_at) <= ?
        """
        params: list = [to_db_timestamp(start), to_db_timestamp(end)]

        if feed_urls is not None:
            urls = list(feed_urls)
            if not urls:
                return []
            placeholders = ",".join("?" for _ in urls)
            query += f" AND url IN ({placeholders})"
            params.extend(urls)

        query += " ORDER BY COALESCE(latest_item_at, last_success_at) DESC, url"

        try:
            with self.db.get_connection() as conn:
                rows = conn.execute(query, params).fetchall()
                return [self._row_to_feed(row) for row in rows]

        except sqlite3.Error as e:
            self.logger.error(f"Failed to get feeds by time range: {e}")
            raise StorageError(f"Failed to get feeds by time range: {e}", query=query) from e

    def upsert_feed_meta(self, feed: Feed) -> None:
        """Insert or update a feed's metadata and fetch bookkeeping.

        Runs in its own transaction so that bookkeeping is recorded even
        when the item delta for the same fetch failed. ``created_at`` is
        only written on insert.

        Args:
            feed: Feed record to persist

        Raises:
            StorageError: If database operation fails
        """
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO feeds (
                        url, title, description, link, etag, last_modified,
                        last_fetched_at, last_success_at, last_status, last_outcome,
                        error_count, last_error, latest_item_at, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(url) DO UPDATE SET
                        title = excluded.title,
                        description = excluded.description,
                        link = excluded.link,
                        etag = excluded.etag,
                        last_modified = excluded.last_modified,
                        last_fetched_at = excluded.last_fetched_at,
                        last_success_at = excluded.last_success_at,
                        last_status = excluded.last_status,
                        last_outcome = excluded.last_outcome,
                        error_count = excluded.error_count,
                        last_error = excluded.last_error,
                        latest_item_at = excluded.latest_item_at
                """,
                    (
                        feed.url,
                        feed.title,
                        feed.description,
                        feed.link,
                        feed.etag,
                        feed.last_modified,
                        to_db_timestamp(feed.last_fetched_at),
                        to_db_timestamp(feed.last_success_at),
                        feed.last_status,
                        feed.last_outcome.value if feed.last_outcome else None,
                        feed.error_count,
                        feed.last_error,
                        to_db_timestamp(feed.latest_item_at),
                        to_db_timestamp(feed.created_at or utc_now()),
                    ),
                )

            self.logger.debug(
                f"Upserted feed meta for {feed.url} (outcome={feed.last_outcome}, errors={feed.error_count})"
            )

        except sqlite3.Error as e:
            self.logger.error(f"Failed to upsert feed {feed.url}: {e}")
            raise StorageError(
                f"Failed to upsert feed {feed.url}: {e}",
                error_code=ErrorCode.DATABASE_TRANSACTION,
            ) from e

    def delete_feeds_not_in(self, keep_urls: Iterable[str]) -> List[str]:
        """Delete every feed whose URL is not in ``keep_urls``.

        Items of deleted feeds are removed by the foreign key cascade.

        Returns:
            URLs of the deleted feeds
        """
        keep = set(keep_urls)

        try:
            with self.db.transaction() as conn:
                rows = conn.execute("SELECT url FROM feeds ORDER BY url").fetchall()
                doomed = [row["url"] for row in rows if row["url"] not in keep]

                conn.executemany(
                    "DELETE FROM feeds WHERE url = ?", [(url,) for url in doomed]
                )

            for url in doomed:
                self.logger.info(f"Removed feed no longer subscribed: {url}")
            return doomed

        except sqlite3.Error as e:
            self.logger.error(f"Failed to delete orphaned feeds: {e}")
            raise StorageError(
                f"Failed to delete orphaned feeds: {e}",
                error_code=ErrorCode.DATABASE_TRANSACTION,
            ) from e

    def _row_to_feed(self, row: sqlite3.Row) -> Feed:
        """Convert database row to Feed object."""
        return Feed(**dict(row))
