"""
Fetch Run Results
=================

Per-feed outcome records and the run summary handed to the CLI and other
reporting collaborators.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..database.models import Outcome
from ..utils.exceptions import FeedKeeperError


class JobState(str, Enum):
    """States of one feed job."""
    PENDING = "pending"
    FETCHING = "fetching"
    PARSING = "parsing"
    RECONCILING = "reconciling"
    COMMITTED = "committed"
    NOT_MODIFIED = "not_modified"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    JobState.COMMITTED,
    JobState.NOT_MODIFIED,
    JobState.FAILED,
    JobState.SKIPPED,
})

# Allowed transitions of the per-feed state machine.
TRANSITIONS = {
    JobState.PENDING: {JobState.FETCHING, JobState.SKIPPED, JobState.FAILED},
    JobState.FETCHING: {JobState.NOT_MODIFIED, JobState.PARSING, JobState.FAILED},
    JobState.PARSING: {JobState.RECONCILING, JobState.FAILED},
    JobState.RECONCILING: {JobState.COMMITTED, JobState.FAILED},
}


@dataclass
class FeedOutcome:
    """Outcome record for one feed of a run."""

    url: str
    outcome: Outcome
    items_inserted: int = 0
    items_updated: int = 0
    items_archived: int = 0
    items_resurrected: int = 0
    status: Optional[int] = None
    error: Optional[FeedKeeperError] = None
    duration_seconds: float = 0.0

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "outcome": self.outcome.value,
            "items_inserted": self.items_inserted,
            "items_updated": self.items_updated,
            "items_archived": self.items_archived,
            "items_resurrected": self.items_resurrected,
            "status": self.status,
            "error": self.error_message,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class RunSummary:
    """Summary of one scheduler run."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[FeedOutcome] = field(default_factory=list)
    cancelled: bool = False
    removed_feeds: int = 0

    def count(self, outcome: Outcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome == outcome)

    @property
    def total_feeds(self) -> int:
        return len(self.outcomes)

    @property
    def committed(self) -> int:
        return self.count(Outcome.COMMITTED)

    @property
    def not_modified(self) -> int:
        return self.count(Outcome.NOT_MODIFIED)

    @property
    def skipped(self) -> int:
        return self.count(Outcome.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(Outcome.FAILED)

    @property
    def items_inserted(self) -> int:
        return sum(o.items_inserted for o in self.outcomes)

    @property
    def items_updated(self) -> int:
        return sum(o.items_updated for o in self.outcomes)

    @property
    def items_archived(self) -> int:
        return sum(o.items_archived for o in self.outcomes)

    @property
    def items_resurrected(self) -> int:
        return sum(o.items_resurrected for o in self.outcomes)

    @property
    def all_failed(self) -> bool:
        """True when there was work to do and none of it succeeded."""
        return bool(self.outcomes) and self.failed == len(self.outcomes)

    @property
    def exit_code(self) -> int:
        return 1 if self.all_failed else 0

    @property
    def duration_seconds(self) -> float:
        if not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def get(self, url: str) -> Optional[FeedOutcome]:
        for outcome in self.outcomes:
            if outcome.url == url:
                return outcome
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "cancelled": self.cancelled,
            "total_feeds": self.total_feeds,
            "committed": self.committed,
            "not_modified": self.not_modified,
            "skipped": self.skipped,
            "failed": self.failed,
            "items_inserted": self.items_inserted,
            "items_updated": self.items_updated,
            "items_archived": self.items_archived,
            "items_resurrected": self.items_resurrected,
            "removed_feeds": self.removed_feeds,
            "feeds": [o.to_dict() for o in self.outcomes],
        }
