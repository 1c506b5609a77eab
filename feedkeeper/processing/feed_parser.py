"""
Feed Parser
===========

Turns raw feed bytes into a normalized ParsedFeed. feedparser does the
wire-format work; a small adapter per format family (RSS, Atom, JSON Feed)
picks GUID, link and content out of the entry, so every format yields the
same ParsedItem shape.

A body that is not well-formed XML is a ParseError even when feedparser's
loose parser salvages some entries. Content-type and encoding warnings are
kept on ParsedFeed.warnings.

Items without a GUID get a fingerprint derived from link and title,
normalized so that whitespace-only or entity-only upstream changes keep
the same identity.
"""

import calendar
import hashlib
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import feedparser

from ..database.models import ParsedFeed, ParsedItem
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import ParseError
from ..utils.validators import TextNormalizer


DATE_FIELDS = ("published_parsed", "updated_parsed", "created_parsed")

# feedparser bozo exceptions that leave the document intact. Anything else
# (xml.sax.SAXException for a body that is not well-formed) fails the feed.
RECOVERABLE_BOZO = (
    feedparser.CharacterEncodingOverride,
    feedparser.CharacterEncodingUnknown,
    feedparser.NonXMLContentType,
    feedparser.UndeclaredNamespace,
)

# Separates fields inside hashed payloads; cannot appear in normalized text.
_FIELD_SEP = "\x1f"


def compute_fingerprint(link: Optional[str], title: Optional[str]) -> str:
    """Stable fallback GUID from link and title."""
    payload = (
        TextNormalizer.normalize_for_hash(link)
        + _FIELD_SEP
        + TextNormalizer.normalize_for_hash(title)
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_content_hash(
    title: Optional[str],
    link: Optional[str],
    published_at: Optional[datetime],
    summary: Optional[str],
    content: Optional[str],
) -> str:
    """Change detector over an item's content fields."""
    parts = [
        TextNormalizer.normalize_for_hash(title),
        TextNormalizer.normalize_for_hash(link),
        published_at.isoformat() if published_at else "",
        TextNormalizer.normalize_for_hash(summary),
        TextNormalizer.normalize_for_hash(content),
    ]
    return hashlib.sha256(_FIELD_SEP.join(parts).encode("utf-8")).hexdigest()


class FormatAdapter:
    """Extracts identity and content from a feedparser entry.

    The base implementation covers RSS; subclasses override where their
    format differs.
    """

    family = "rss"

    def guid(self, entry: Any) -> str:
        return (entry.get("id") or "").strip()

    def link(self, entry: Any) -> str:
        return (entry.get("link") or "").strip()

    def summary(self, entry: Any) -> str:
        return entry.get("summary") or ""

    def content(self, entry: Any) -> str:
        contents = entry.get("content") or []
        for block in contents:
            value = block.get("value") if isinstance(block, dict) else None
            if value:
                return value
        return ""


class AtomAdapter(FormatAdapter):
    """Atom entries: prefer the alternate link and HTML content."""

    family = "atom"

    def link(self, entry: Any) -> str:
        for link in entry.get("links") or []:
            if link.get("rel", "alternate") == "alternate" and link.get("href"):
                return link["href"].strip()
        return super().link(entry)

    def content(self, entry: Any) -> str:
        contents = entry.get("content") or []
        for block in contents:
            if block.get("type") in ("text/html", "application/xhtml+xml") and block.get("value"):
                return block["value"]
        return super().content(entry)


class JSONFeedAdapter(FormatAdapter):
    """JSON Feed items: ``url`` is the link, ``external_url`` the fallback."""

    family = "json"

    def link(self, entry: Any) -> str:
        link = super().link(entry)
        if link:
            return link
        return (entry.get("external_url") or "").strip()


_ADAPTERS = {
    "rss": FormatAdapter(),
    "atom": AtomAdapter(),
    "json": JSONFeedAdapter(),
}


def select_adapter(version: str, content_type: Optional[str] = None) -> FormatAdapter:
    """Pick the format adapter from feedparser's detected version.

    Falls back to the declared content type, then to RSS.
    """
    version = (version or "").lower()
    if version.startswith("atom"):
        return _ADAPTERS["atom"]
    if version.startswith("json"):
        return _ADAPTERS["json"]
    if version.startswith("rss") or version == "cdf":
        return _ADAPTERS["rss"]

    content_type = (content_type or "").lower()
    if "atom" in content_type:
        return _ADAPTERS["atom"]
    if "json" in content_type:
        return _ADAPTERS["json"]
    return _ADAPTERS["rss"]


def parse_entry_date(entry: Any) -> Optional[datetime]:
    """Publication date of an entry in UTC, or None when the feed omits it.

    feedparser normalizes dates to UTC struct_time, so ``calendar.timegm``
    is the correct inverse.
    """
    for field in DATE_FIELDS:
        date_tuple = entry.get(field)
        if date_tuple:
            try:
                return datetime.fromtimestamp(calendar.timegm(date_tuple), tz=timezone.utc)
            except (ValueError, OverflowError, TypeError):
                continue
    return None


class FeedParser:
    """Parses raw feed documents into normalized feeds and items."""

    def __init__(self, max_items: int = 0):
        """Initialize parser.

        Args:
            max_items: Keep at most this many entries per feed, in feed
                order (0 means no limit)
        """
        self.max_items = max(0, max_items)
        self.logger = get_logger_for_component("feed_parser")

    def parse(
        self,
        body: bytes,
        content_type: Optional[str] = None,
        feed_url: str = "",
    ) -> ParsedFeed:
        """Parse a feed document.

        Args:
            body: Raw response body
            content_type: Declared Content-Type header, if any
            feed_url: Feed URL, used for relative links and error context

        Returns:
            ParsedFeed with items in feed order

        Raises:
            ParseError: If the body is not a recognizable feed
        """
        if not body:
            raise ParseError("Empty feed body", feed_url=feed_url or None)

        response_headers = {"content-location": feed_url} if feed_url else {}
        if content_type:
            response_headers["content-type"] = content_type

        parsed = feedparser.parse(body, response_headers=response_headers)

        version = parsed.get("version") or ""
        entries = parsed.get("entries") or []
        bozo_exception = parsed.get("bozo_exception") if parsed.get("bozo") else None

        # Not well-formed fails the feed even when entries were recovered
        if bozo_exception is not None and not isinstance(bozo_exception, RECOVERABLE_BOZO):
            self.logger.warning(f"Feed parse failed for {feed_url}: {bozo_exception}")
            raise ParseError(
                f"Feed parse error: {type(bozo_exception).__name__}: {bozo_exception}",
                feed_url=feed_url or None,
            )

        if not entries and not version:
            self.logger.warning(f"Feed parse failed for {feed_url}: no recognizable feed format")
            raise ParseError("Feed parse error: no recognizable feed format", feed_url=feed_url or None)

        adapter = select_adapter(version, content_type)
        warnings: List[str] = []
        if bozo_exception is not None:
            warnings.append(f"{type(bozo_exception).__name__}: {bozo_exception}")
            self.logger.info(f"Feed parsed with warnings: {feed_url}: {bozo_exception}")

        if self.max_items and len(entries) > self.max_items:
            self.logger.debug(
                f"Capping {feed_url} at {self.max_items} of {len(entries)} entries"
            )
            entries = entries[: self.max_items]

        items = []
        for index, entry in enumerate(entries):
            item, problem = self._parse_entry(entry, adapter)
            if item is None:
                warnings.append(f"entry {index}: {problem}")
                continue
            items.append(item)

        meta = parsed.get("feed") or {}
        feed = ParsedFeed(
            title=TextNormalizer.collapse_whitespace(meta.get("title")),
            description=TextNormalizer.collapse_whitespace(
                meta.get("subtitle") or meta.get("description")
            ),
            link=(meta.get("link") or "").strip(),
            format=adapter.family,
            version=version,
            items=items,
            warnings=warnings,
        )

        self.logger.debug(
            f"Parsed {len(items)} items from {feed_url} ({version or adapter.family})"
        )
        return feed

    def _parse_entry(self, entry: Any, adapter: FormatAdapter) -> Tuple[Optional[ParsedItem], str]:
        """Normalize one entry; returns (None, reason) for unusable entries."""
        title = TextNormalizer.collapse_whitespace(entry.get("title"))
        link = adapter.link(entry)
        guid = adapter.guid(entry)
        summary = adapter.summary(entry)
        content = adapter.content(entry)
        published_at = parse_entry_date(entry)

        guid_is_fingerprint = False
        if not guid:
            if not link and not title:
                return None, "no guid, link or title"
            guid = compute_fingerprint(link, title)
            guid_is_fingerprint = True

        return ParsedItem(
            guid=guid,
            title=title,
            link=link,
            summary=summary,
            content=content,
            published_at=published_at,
            content_hash=compute_content_hash(title, link, published_at, summary, content),
            guid_is_fingerprint=guid_is_fingerprint,
        ), ""
