"""
FeedKeeper Storage Layer
=======================

Repository pattern implementations for data access abstraction.

This module provides:
- Feed repository for fetch bookkeeping and subscriptions
- Item repository for delta application and purges
- Archival store facade used by the scheduler and renderers
"""

from .archival_store import ArchivalStore
from .feed_repository import FeedRepository
from .item_repository import ItemRepository

__all__ = [
    "ArchivalStore",
    "FeedRepository",
    "ItemRepository",
]
