"""
PyTest Configuration and Fixtures
=================================

Shared fixtures for FeedKeeper tests: temporary SQLite databases built
through DatabaseSchema, a controllable clock, feed document builders and
a scripted fetcher for scheduler tests.
"""

import os
import sys
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone, timedelta
from email.utils import format_datetime
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Keep test runs from writing log files into the working tree
os.environ["FEEDKEEPER_LOGGING__FILE_PATH"] = ""
os.environ["FEEDKEEPER_LOGGING__CONSOLE_LOGGING"] = "false"


FEED_URL = "https://example.com/feed.xml"


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def temp_db(tmp_path):
    """Temporary database file with the FeedKeeper schema."""
    from feedkeeper.database.schema import DatabaseSchema

    db_path = tmp_path / "feedkeeper_test.db"
    DatabaseSchema(str(db_path)).create_tables()
    return str(db_path)


@pytest.fixture
def db_connection(temp_db):
    """Create a database connection manager for testing."""
    from feedkeeper.database.connection import DatabaseConnection

    connection = DatabaseConnection(temp_db, pool_size=2)
    yield connection

    connection.close_all_connections()


@pytest.fixture
def store(db_connection):
    """ArchivalStore over the temporary database."""
    from feedkeeper.storage.archival_store import ArchivalStore

    return ArchivalStore(db_connection)


# ============================================================================
# Time
# ============================================================================


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


# ============================================================================
# Feed documents
# ============================================================================


def build_rss(items: List[Dict], title: str = "Example Feed") -> bytes:
    """Build an RSS 2.0 document.

    Each item dict may carry guid, title, link, description and published
    (a datetime). Keys that are absent are left out of the XML.
    """
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<rss version="2.0"><channel>',
        f"<title>{title}</title>",
        "<link>https://example.com/</link>",
        "<description>Example feed for tests</description>",
    ]
    for item in items:
        parts.append("<item>")
        if "guid" in item:
            parts.append(f'<guid isPermaLink="false">{item["guid"]}</guid>')
        if "title" in item:
            parts.append(f"<title>{item['title']}</title>")
        if "link" in item:
            parts.append(f"<link>{item['link']}</link>")
        if "description" in item:
            parts.append(f"<description>{item['description']}</description>")
        if "published" in item:
            parts.append(f"<pubDate>{format_datetime(item['published'])}</pubDate>")
        parts.append("</item>")
    parts.append("</channel></rss>")
    return "\n".join(parts).encode("utf-8")


def build_atom(entries: List[Dict], title: str = "Example Atom Feed") -> bytes:
    """Build an Atom 1.0 document from entry dicts (id, title, link, content, updated)."""
    parts = [
        '<?xml version="1.0" encoding="utf-8"?>',
        '<feed xmlns="http://www.w3.org/2005/Atom">',
        f"<title>{title}</title>",
        '<link href="https://example.org/"/>',
        "<id>urn:uuid:60a76c80-d399-11d9-b93C-0003939e0af6</id>",
        "<updated>2024-03-01T12:00:00Z</updated>",
    ]
    for entry in entries:
        parts.append("<entry>")
        if "id" in entry:
            parts.append(f"<id>{entry['id']}</id>")
        parts.append(f"<title>{entry.get('title', '')}</title>")
        if "link" in entry:
            parts.append(f'<link rel="alternate" href="{entry["link"]}"/>')
        if "content" in entry:
            parts.append(f'<content type="html">{entry["content"]}</content>')
        if "updated" in entry:
            parts.append(f"<updated>{entry['updated']}</updated>")
        parts.append("</entry>")
    parts.append("</feed>")
    return "\n".join(parts).encode("utf-8")


@pytest.fixture
def rss_builder():
    return build_rss


@pytest.fixture
def atom_builder():
    return build_atom


def parsed_item(guid: str, title: str = "Title", link: Optional[str] = None, **kwargs):
    """ParsedItem with a content hash computed like the parser does."""
    from feedkeeper.database.models import ParsedItem
    from feedkeeper.processing.feed_parser import compute_content_hash

    link = link if link is not None else f"https://example.com/{guid}"
    summary = kwargs.pop("summary", "")
    content = kwargs.pop("content", "")
    published_at = kwargs.pop("published_at", None)
    return ParsedItem(
        guid=guid,
        title=title,
        link=link,
        summary=summary,
        content=content,
        published_at=published_at,
        content_hash=compute_content_hash(title, link, published_at, summary, content),
        **kwargs,
    )


@pytest.fixture
def make_item():
    return parsed_item


# ============================================================================
# HTTP test doubles
# ============================================================================


def mock_response(status: int = 200, body: bytes = b"", headers: Optional[Dict] = None):
    """aiohttp-like response usable as ``async with session.get(...)``."""
    response = MagicMock()
    response.status = status
    response.reason = "OK" if status < 400 else "Error"
    response.headers = headers or {}
    response.read = AsyncMock(return_value=body)

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=None)
    return context


@pytest.fixture
def mock_session():
    """Session whose ``get`` is a MagicMock to be configured per test."""
    session = MagicMock()
    session.get = MagicMock()
    return session


class ScriptedFetcher:
    """Fetcher double returning queued FetchResults per URL.

    A script entry may be a FetchResult, an exception to raise, or an
    ``asyncio.Event`` the fetch waits on forever (to exercise cancellation).
    """

    def __init__(self):
        self.scripts: Dict[str, List] = {}
        self.calls: List[Dict] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def script(self, url: str, *results) -> None:
        self.scripts.setdefault(url, []).extend(results)

    @asynccontextmanager
    async def get_session(self):
        yield MagicMock()

    async def fetch(self, url, validators=None, session=None, force=False):
        self.calls.append({"url": url, "validators": validators, "force": force})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            step = self.scripts[url].pop(0)
            if isinstance(step, asyncio.Event):
                await step.wait()
                raise AssertionError("blocking fetch was released unexpectedly")
            if isinstance(step, BaseException):
                raise step
            return step
        finally:
            self.in_flight -= 1


@pytest.fixture
def scripted_fetcher():
    return ScriptedFetcher()


def modified(url: str, body: bytes, etag: Optional[str] = None,
             last_modified: Optional[str] = None, status: int = 200):
    from feedkeeper.database.models import CacheValidators
    from feedkeeper.processing.conditional_fetcher import FetchResult

    return FetchResult.modified(
        url, body, CacheValidators(etag=etag, last_modified=last_modified),
        status=status, content_type="application/rss+xml",
    )


def not_modified(url: str, etag: Optional[str] = None):
    from feedkeeper.database.models import CacheValidators
    from feedkeeper.processing.conditional_fetcher import FetchResult

    return FetchResult.not_modified(url, CacheValidators(etag=etag))


def failed(url: str, error):
    from feedkeeper.processing.conditional_fetcher import FetchResult

    return FetchResult.failed(url, error, status=getattr(error, "status", None))
