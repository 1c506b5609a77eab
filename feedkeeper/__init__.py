"""
FeedKeeper - Feed Synchronization Engine
========================================

Keeps a durable, deduplicated record of feed items across repeated fetch
runs, archiving items that disappear upstream instead of deleting them.

Main Components:
- Database: SQLite with connection pooling and schema management
- Configuration: environment variables with Pydantic validation
- Processing: conditional fetching, parsing, reconciliation, scheduling
- Storage: archival store for feeds, active items and archived items
"""

__version__ = "1.0.0"
__author__ = "FeedKeeper Development Team"
__description__ = "Feed synchronization engine with conditional fetching and item archival"

# Core imports for easy access
from .config.settings import load_settings
from .database.connection import DatabaseConnection
from .database.schema import DatabaseSchema
from .utils.logging import configure_application_logging, get_logger_for_component
from .utils.exceptions import FeedKeeperError

__all__ = [
    "load_settings",
    "DatabaseConnection",
    "DatabaseSchema",
    "configure_application_logging",
    "get_logger_for_component",
    "FeedKeeperError",
]
