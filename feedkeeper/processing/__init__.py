"""
FeedKeeper Processing Module
===========================

Feed synchronization pipeline: conditional fetching, parsing,
reconciliation against stored items, scheduling and enrichment hand-off.
"""

from .conditional_fetcher import ConditionalFetcher, FetchResult, FetchKind
from .feed_parser import FeedParser
from .reconciler import Reconciler
from .results import FeedOutcome, RunSummary, JobState
from .scheduler import FetchScheduler
from .unfurl import UnfurlCoordinator

__all__ = [
    'ConditionalFetcher',
    'FetchResult',
    'FetchKind',
    'FeedParser',
    'Reconciler',
    'FeedOutcome',
    'RunSummary',
    'JobState',
    'FetchScheduler',
    'UnfurlCoordinator',
]
