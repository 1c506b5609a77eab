"""
FeedKeeper Database Schema
=========================

SQLite schema for the feed synchronization engine:
- feeds: one row per subscribed feed URL with fetch bookkeeping
- items: every item ever seen, active or archived, unique per (feed, guid)

Archived items are a status on the items table rather than a separate table,
so history stays queryable until it is purged by age.
"""

import sqlite3
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


EXPECTED_TABLES = {"feeds", "items"}


class DatabaseSchema:
    """Database schema manager for the FeedKeeper SQLite database."""

    def __init__(self, db_path: str = "data/feedkeeper.db"):
        """Initialize database schema manager.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def create_tables(self) -> None:
        """Create all database tables and indexes."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("PRAGMA foreign_keys = ON")

            self._create_feeds_table(conn)
            self._create_items_table(conn)
            self._create_indexes(conn)

            conn.commit()
            logger.info("Database schema created successfully")

    def _create_feeds_table(self, conn: sqlite3.Connection) -> None:
        """Create feeds table keyed by canonical URL."""
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS feeds (
                url TEXT PRIMARY KEY,
                title TEXT,
                description TEXT,
                link TEXT,
                etag TEXT,
                last_modified TEXT,
                last_fetched_at TIMESTAMP,
                last_success_at TIMESTAMP,
                last_status INTEGER,
                last_outcome TEXT,
                error_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                latest_item_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL
            )
        """
        )

    def _create_items_table(self, conn: sqlite3.Connection) -> None:
        """Create items table holding both active and archived items."""
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                feed_url TEXT NOT NULL,
                guid TEXT NOT NULL,
                title TEXT,
                link TEXT,
                summary TEXT,
                content TEXT,
                published_at TIMESTAMP,
                content_hash TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'archived')),
                first_seen TIMESTAMP NOT NULL,
                last_seen TIMESTAMP NOT NULL,
                archived_at TIMESTAMP,
                FOREIGN KEY (feed_url) REFERENCES feeds(url) ON DELETE CASCADE,
                UNIQUE (feed_url, guid)
            )
        """
        )

    def _create_indexes(self, conn: sqlite3.Connection) -> None:
        """Create indexes for the store's lookup and purge queries."""
        indexes = [
            # Feed indexes
            "CREATE INDEX IF NOT EXISTS idx_feeds_last_fetched ON feeds(last_fetched_at)",
            "CREATE INDEX IF NOT EXISTS idx_feeds_error_count ON feeds(error_count)",
            # Item indexes
            "CREATE INDEX IF NOT EXISTS idx_items_feed_status ON items(feed_url, status)",
            "CREATE INDEX IF NOT EXISTS idx_items_archived_at ON items(status, archived_at)",
            "CREATE INDEX IF NOT EXISTS idx_items_published ON items(published_at)",
            "CREATE INDEX IF NOT EXISTS idx_items_first_seen ON items(first_seen)",
        ]

        for index_sql in indexes:
            conn.execute(index_sql)

    def get_connection(self) -> sqlite3.Connection:
        """Get database connection with foreign keys enabled."""
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.row_factory = sqlite3.Row
        return conn

    def verify_schema(self) -> bool:
        """Verify database schema is correctly created."""
        conn = None
        try:
            conn = self.get_connection()
            cursor = conn.execute(
                """
                SELECT name FROM sqlite_master
                WHERE type='table' AND name NOT LIKE 'sqlite_%'
                ORDER BY name
            """
            )

            tables = {row[0] for row in cursor.fetchall()}

            if not EXPECTED_TABLES.issubset(tables):
                logger.error(
                    f"Missing tables. Expected: {EXPECTED_TABLES}, Found: {tables}"
                )
                return False

            violations = conn.execute("PRAGMA foreign_key_check").fetchall()
            if violations:
                logger.error(f"Foreign key violations found: {len(violations)}")
                return False

            logger.info("Database schema verification passed")
            return True

        except sqlite3.Error as e:
            logger.error(f"Schema verification failed: {e}")
            return False
        finally:
            if conn is not None:
                conn.close()


def create_tables(db_path: str = "data/feedkeeper.db") -> None:
    """Convenience function to create database tables.

    Args:
        db_path: Path to SQLite database file
    """
    schema = DatabaseSchema(db_path)
    schema.create_tables()
