"""
FeedKeeper Data Models
=====================

Pydantic models for persisted feeds and items, plus the transient value
types that flow through one fetch cycle (parsed items and deltas).
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any
from dataclasses import dataclass, field

from pydantic import BaseModel, Field


class ItemStatus(str, Enum):
    """Lifecycle status of a stored item."""
    ACTIVE = "active"
    ARCHIVED = "archived"


class Outcome(str, Enum):
    """Terminal outcome of one feed job."""
    COMMITTED = "committed"
    NOT_MODIFIED = "not_modified"
    SKIPPED = "skipped"
    FAILED = "failed"


class CacheValidators(BaseModel):
    """Opaque HTTP cache validators returned by the upstream server."""
    etag: Optional[str] = Field(default=None, description="Entity tag (ETag header)")
    last_modified: Optional[str] = Field(default=None, description="Last-Modified header value")

    def is_empty(self) -> bool:
        return not self.etag and not self.last_modified

    def to_headers(self) -> Dict[str, str]:
        """Build conditional request headers."""
        headers = {}
        if self.etag:
            headers["If-None-Match"] = self.etag
        if self.last_modified:
            headers["If-Modified-Since"] = self.last_modified
        return headers


class Feed(BaseModel):
    """Feed source with fetch bookkeeping, keyed by URL."""
    url: str = Field(..., min_length=1, description="Canonical feed URL")
    title: Optional[str] = Field(default=None, description="Feed title")
    description: Optional[str] = Field(default=None, description="Feed description")
    link: Optional[str] = Field(default=None, description="Feed website link")
    etag: Optional[str] = Field(default=None, description="Stored ETag validator")
    last_modified: Optional[str] = Field(default=None, description="Stored Last-Modified validator")
    last_fetched_at: Optional[datetime] = Field(default=None, description="Last fetch attempt")
    last_success_at: Optional[datetime] = Field(default=None, description="Last successful fetch")
    last_status: Optional[int] = Field(default=None, description="Last HTTP status code")
    last_outcome: Optional[Outcome] = Field(default=None, description="Last job outcome")
    error_count: int = Field(default=0, ge=0, description="Consecutive error count")
    last_error: Optional[str] = Field(default=None, description="Last error message")
    latest_item_at: Optional[datetime] = Field(default=None, description="First-seen time of the newest item")
    created_at: Optional[datetime] = Field(default=None, description="First fetch attempt")

    @property
    def validators(self) -> CacheValidators:
        return CacheValidators(etag=self.etag, last_modified=self.last_modified)

    def __str__(self) -> str:
        return f"Feed({self.title or self.url})"


class Item(BaseModel):
    """Stored feed item, active or archived."""
    id: Optional[int] = Field(default=None, description="Database primary key")
    feed_url: str = Field(..., description="Owning feed URL")
    guid: str = Field(..., min_length=1, description="Feed-supplied GUID or fallback fingerprint")
    title: Optional[str] = Field(default=None)
    link: Optional[str] = Field(default=None)
    summary: Optional[str] = Field(default=None)
    content: Optional[str] = Field(default=None)
    published_at: Optional[datetime] = Field(default=None, description="Publication time, if the feed gives one")
    content_hash: str = Field(..., description="Change detector over the item's content fields")
    status: ItemStatus = Field(default=ItemStatus.ACTIVE)
    first_seen: datetime = Field(..., description="First time this GUID was seen")
    last_seen: datetime = Field(..., description="Last time this GUID was present upstream")
    archived_at: Optional[datetime] = Field(default=None, description="Set while the item is archived")

    def is_archived(self) -> bool:
        return self.status == ItemStatus.ARCHIVED

    def __str__(self) -> str:
        return f"Item({self.guid}:{(self.title or '')[:50]})"


@dataclass(frozen=True)
class ParsedItem:
    """Normalized item produced by the feed parser."""
    guid: str
    title: str
    link: str
    content_hash: str
    summary: str = ""
    content: str = ""
    published_at: Optional[datetime] = None
    guid_is_fingerprint: bool = False


@dataclass
class ParsedFeed:
    """Normalized feed produced by the feed parser."""
    title: str = ""
    description: str = ""
    link: str = ""
    format: str = ""
    version: str = ""
    items: List[ParsedItem] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ItemChange:
    """A change to an already stored item."""
    item_id: int
    guid: str
    fresh: Optional[ParsedItem] = None
    content_changed: bool = False


@dataclass
class ItemDelta:
    """Reconciliation result for one feed; every list is sorted by GUID."""
    feed_url: str
    inserts: List[ParsedItem] = field(default_factory=list)
    updates: List[ItemChange] = field(default_factory=list)
    unchanged: List[ItemChange] = field(default_factory=list)
    resurrections: List[ItemChange] = field(default_factory=list)
    archivals: List[ItemChange] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        """True when the delta changes anything beyond last-seen times."""
        return bool(self.inserts or self.updates or self.resurrections or self.archivals)

    def counts(self) -> Dict[str, int]:
        return {
            "inserted": len(self.inserts),
            "updated": len(self.updates),
            "unchanged": len(self.unchanged),
            "resurrected": len(self.resurrections),
            "archived": len(self.archivals),
            "duplicates": len(self.duplicates),
        }


@dataclass(frozen=True)
class InsertedItem:
    """Newly inserted item handed to enrichment."""
    item_id: int
    guid: str
    link: str


@dataclass
class AppliedDelta:
    """Result of committing an ItemDelta."""
    feed_url: str
    inserted: List[InsertedItem] = field(default_factory=list)
    updated: int = 0
    unchanged: int = 0
    resurrected: int = 0
    archived: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feed_url": self.feed_url,
            "inserted": len(self.inserted),
            "updated": self.updated,
            "unchanged": self.unchanged,
            "resurrected": self.resurrected,
            "archived": self.archived,
        }


@dataclass
class FeedWithItems:
    """Feed record paired with its items for renderers."""
    feed: Feed
    items: List[Item] = field(default_factory=list)
