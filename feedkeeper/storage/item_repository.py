"""
Item Repository
===============

Repository for feed items. Applies reconciliation deltas atomically and
owns the only hard-delete path for items: purging archived items by age.
"""

import sqlite3
from datetime import datetime
from typing import List, Optional, Dict, Iterable

from ..database.connection import DatabaseConnection
from ..database.models import (
    Item,
    ItemStatus,
    ItemDelta,
    AppliedDelta,
    InsertedItem,
)
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import StorageError, ErrorCode
from ..utils.timestamps import to_db_timestamp


# Renderers order and filter items by publication time, falling back to
# first-seen for items the feed left undated.
ITEM_TIME_SQL = "COALESCE(published_at, first_seen)"


class ItemRepository:
    """Repository for managing feed items in the database."""

    def __init__(self, db_connection: DatabaseConnection):
        """Initialize item repository.

        Args:
            db_connection: Database connection manager
        """
        self.db = db_connection
        self.logger = get_logger_for_component("item_repository")

    def get_items_by_status(self, feed_url: str, status: ItemStatus) -> List[Item]:
        """Get all items of a feed with the given status, ordered by GUID."""
        try:
            with self.db.get_connection() as conn:
                rows = conn.execute(
                    "SELECT * FROM items WHERE feed_url = ? AND status = ? ORDER BY guid",
                    (feed_url, status.value),
                ).fetchall()

                return [self._row_to_item(row) for row in rows]

        except sqlite3.Error as e:
            self.logger.error(f"Failed to get {status.value} items for {feed_url}: {e}")
            raise StorageError(f"Failed to get items for {feed_url}: {e}") from e

    def get_item(self, feed_url: str, guid: str) -> Optional[Item]:
        """Get a single item by feed URL and GUID."""
        try:
            with self.db.get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM items WHERE feed_url = ? AND guid = ?",
                    (feed_url, guid),
                ).fetchone()

                return self._row_to_item(row) if row else None

        except sqlite3.Error as e:
            self.logger.error(f"Failed to get item {guid} for {feed_url}: {e}")
            raise StorageError(f"Failed to get item {guid}: {e}") from e

    def apply_delta(self, feed_url: str, delta: ItemDelta, now: datetime) -> AppliedDelta:
        """Apply a reconciliation delta in a single transaction.

        Either every insert, update, resurrection, archival and last-seen
        bump for the feed commits, or none does.

        Args:
            feed_url: Feed the delta belongs to
            delta: Reconciliation result
            now: Cycle time used for last-seen, first-seen and archived-at

        Returns:
            AppliedDelta with the ids of inserted items

        Raises:
            StorageError: If the transaction fails (it is rolled back)
        """
        ts = to_db_timestamp(now)
        applied = AppliedDelta(feed_url=feed_url)

        try:
            with self.db.transaction() as conn:
                # Items reference their feed; make sure it exists before the
                # feed meta upsert that follows the delta.
                conn.execute(
                    "INSERT OR IGNORE INTO feeds (url, created_at) VALUES (?, ?)",
                    (feed_url, ts),
                )

                for fresh in delta.inserts:
                    cursor = conn.execute(
                        """
                        INSERT INTO items (
                            feed_url, guid, title, link, summary, content,
                            published_at, content_hash, status,
                            first_seen, last_seen, archived_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?, NULL)
                    """,
                        (
                            feed_url,
                            fresh.guid,
                            fresh.title,
                            fresh.link,
                            fresh.summary,
                            fresh.content,
                            to_db_timestamp(fresh.published_at),
                            fresh.content_hash,
                            ts,
                            ts,
                        ),
                    )
                    applied.inserted.append(
                        InsertedItem(item_id=cursor.lastrowid, guid=fresh.guid, link=fresh.link)
                    )

                for change in delta.updates:
                    self._refresh_content(conn, change.item_id, change.fresh, ts)
                    applied.updated += 1

                if delta.unchanged:
                    conn.executemany(
                        "UPDATE items SET last_seen = ? WHERE id = ?",
                        [(ts, change.item_id) for change in delta.unchanged],
                    )
                    applied.unchanged = len(delta.unchanged)

                for change in delta.resurrections:
                    conn.execute(
                        "UPDATE items SET status = 'active', archived_at = NULL WHERE id = ?",
                        (change.item_id,),
                    )
                    self._refresh_content(conn, change.item_id, change.fresh, ts)
                    applied.resurrected += 1

                for change in delta.archivals:
                    cursor = conn.execute(
                        """
                        UPDATE items SET status = 'archived', archived_at = ?
                        WHERE id = ? AND status = 'active'
                    """,
                        (ts, change.item_id),
                    )
                    applied.archived += cursor.rowcount

            self.logger.debug(f"Applied delta for {feed_url}: {applied.to_dict()}")
            return applied

        except sqlite3.Error as e:
            self.logger.error(f"Failed to apply delta for {feed_url}: {e}")
            raise StorageError(
                f"Failed to apply item delta for {feed_url}: {e}",
                error_code=ErrorCode.DATABASE_TRANSACTION,
                context={"feed_url": feed_url},
            ) from e

    def _refresh_content(self, conn: sqlite3.Connection, item_id: int, fresh, ts: str) -> None:
        """Overwrite an item's content fields and bump last-seen."""
        conn.execute(
            """
            UPDATE items SET
                title = ?, link = ?, summary = ?, content = ?,
                published_at = ?, content_hash = ?, last_seen = ?
            WHERE id = ?
        """,
            (
                fresh.title,
                fresh.link,
                fresh.summary,
                fresh.content,
                to_db_timestamp(fresh.published_at),
                fresh.content_hash,
                ts,
                item_id,
            ),
        )

    def delete_archived_before(self, older_than: datetime, min_items_keep: int = 0) -> int:
        """Delete archived items whose archived-at is strictly before a cutoff.

        Active items are never touched. With ``min_items_keep`` > 0 the newest
        that many items of each feed (by publication time, then first-seen)
        are protected even when archived and past the cutoff.

        Returns:
            Number of deleted items
        """
        cutoff = to_db_timestamp(older_than)

        if min_items_keep > 0:
            query = f"""
                DELETE FROM items
                WHERE status = 'archived'
                  AND archived_at < ?
                  AND id NOT IN (
                      SELECT id FROM (
                          SELECT id, ROW_NUMBER() OVER (
                              PARTITION BY feed_url
                              ORDER BY {ITEM_TIME_SQL} DESC, id DESC
                          ) AS rn
                          FROM items
                      ) WHERE rn <= ?
                  )
            """
            params = (cutoff, min_items_keep)
        else:
            query = "DELETE FROM items WHERE status = 'archived' AND archived_at < ?"
            params = (cutoff,)

        try:
            with self.db.transaction() as conn:
                cursor = conn.execute(query, params)
                deleted = cursor.rowcount

            self.logger.info(
                f"Purged {deleted} archived items archived before {cutoff}"
                f" (min_items_keep={min_items_keep})"
            )
            return deleted

        except sqlite3.Error as e:
            self.logger.error(f"Failed to purge archived items: {e}")
            raise StorageError(
                f"Failed to purge archived items: {e}",
                query=query,
                error_code=ErrorCode.DATABASE_TRANSACTION,
            ) from e

    def get_items_for_feed(
        self,
        feed_url: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 0,
        include_archived: bool = True,
    ) -> List[Item]:
        """Get a feed's items, newest first.

        Args:
            feed_url: Feed URL
            since: Only items at or after this time
            until: Only items at or before this time
            limit: Maximum number of items (0 means no limit)
            include_archived: Include archived items
        """
        query = "SELECT * FROM items WHERE feed_url = ?"
        params: list = [feed_url]

        if not include_archived:
            query += " AND status = 'active'"
        if since is not None:
            query += f" AND {ITEM_TIME_SQL} >= ?"
            params.append(to_db_timestamp(since))
        if until is not None:
            query += f" AND {ITEM_TIME_SQL} <= ?"
            params.append(to_db_timestamp(until))

        query += f" ORDER BY {ITEM_TIME_SQL} DESC, id DESC"

        if limit > 0:
            query += " LIMIT ?"
            params.append(limit)

        try:
            with self.db.get_connection() as conn:
                rows = conn.execute(query, params).fetchall()
                return [self._row_to_item(row) for row in rows]

        except sqlite3.Error as e:
            self.logger.error(f"Failed to get items for {feed_url}: {e}")
            raise StorageError(f"Failed to get items for {feed_url}: {e}", query=query) from e

    def get_items_for_feeds(
        self, feed_urls: Iterable[str], start: datetime, end: datetime
    ) -> Dict[str, List[Item]]:
        """Get items of several feeds within a time range, grouped by feed."""
        urls = list(feed_urls)
        grouped: Dict[str, List[Item]] = {url: [] for url in urls}
        if not urls:
            return grouped

        placeholders = ",".join("?" for _ in urls)
        query = f"""
            SELECT * FROM items
            WHERE feed_url IN ({placeholders})
              AND {ITEM_TIME_SQL} >= ? AND {ITEM_TIME_SQL} <= ?
            ORDER BY feed_url, {ITEM_TIME_SQL} DESC, id DESC
        """
        params = [*urls, to_db_timestamp(start), to_db_timestamp(end)]

        try:
            with self.db.get_connection() as conn:
                for row in conn.execute(query, params).fetchall():
                    item = self._row_to_item(row)
                    grouped[item.feed_url].append(item)
            return grouped

        except sqlite3.Error as e:
            self.logger.error(f"Failed to get items by time range: {e}")
            raise StorageError(f"Failed to get items by time range: {e}", query=query) from e

    def _row_to_item(self, row: sqlite3.Row) -> Item:
        """Convert database row to Item object."""
        return Item(**dict(row))
