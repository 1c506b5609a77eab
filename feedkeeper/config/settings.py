"""
FeedKeeper Configuration System
===============================

Configuration management with environment variables and Pydantic models.
Precedence: keyword overrides (from the CLI), then FEEDKEEPER_* environment
variables and .env, then field defaults.
"""

from pathlib import Path
from typing import Dict, Optional
from enum import Enum

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from ..utils.exceptions import ConfigurationError, ErrorCode


DEFAULT_USER_AGENT = "FeedKeeper/1.0 (feed synchronizer)"


class LogLevel(str, Enum):
    """Available log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class FetchSettings(BaseModel):
    """Fetch cycle configuration."""
    concurrency: int = Field(default=32, ge=1, le=256, description="Feeds fetched in parallel")
    timeout_seconds: float = Field(default=30.0, gt=0, le=600, description="Per-feed request timeout")
    max_age_seconds: float = Field(default=0.0, ge=0, description="Skip feeds fetched more recently than this (0 disables)")
    force: bool = Field(default=False, description="Ignore cache validators and the max-age skip")
    max_items: int = Field(default=100, ge=0, description="Items kept per feed fetch (0 means all)")
    run_deadline_seconds: Optional[float] = Field(default=None, gt=0, description="Overall run deadline")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, min_length=1, description="HTTP User-Agent header")

    @field_validator('run_deadline_seconds')
    @classmethod
    def validate_deadline(cls, v, info):
        """Deadline must leave room for at least one feed timeout."""
        timeout = info.data.get('timeout_seconds')
        if v is not None and timeout is not None and v < timeout:
            raise ValueError("run_deadline_seconds must not be shorter than timeout_seconds")
        return v


class PurgeSettings(BaseModel):
    """Archived item retention."""
    max_age_days: int = Field(default=30, ge=1, le=3650, description="Archived items older than this are deleted")
    min_items_keep: int = Field(default=0, ge=0, description="Newest items per feed protected from purge")
    skip_vacuum: bool = Field(default=False, description="Skip VACUUM after purging")


class DatabaseSettings(BaseModel):
    """Database configuration."""
    path: str = Field(default="data/feedkeeper.db", description="SQLite database file path")
    pool_size: int = Field(default=5, ge=1, le=20, description="Connection pool size")


class LoggingSettings(BaseModel):
    """Logging configuration."""
    level: LogLevel = Field(default=LogLevel.INFO, description="Global log level")
    file_path: Optional[str] = Field(default="logs/feedkeeper.log", description="Log file path")
    max_file_size_mb: int = Field(default=10, ge=1, le=100, description="Max log file size in MB")
    backup_count: int = Field(default=5, ge=1, le=20, description="Number of log backup files")
    structured_logging: bool = Field(default=False, description="Use structured JSON logging")
    console_logging: bool = Field(default=True, description="Enable console logging")


class UnfurlSettings(BaseModel):
    """Enrichment hand-off configuration, read by UnfurlCoordinator.from_settings."""
    enabled: bool = Field(
        default=False,
        description="Let UnfurlCoordinator.from_settings build a coordinator for an embedding enricher; the CLI ships none",
    )
    concurrency: int = Field(default=4, ge=1, le=100, description="Concurrent enrichment workers")
    queue_size: int = Field(default=1000, ge=10, le=100000, description="Pending enrichment jobs before new ones are dropped")


class FeedKeeperSettings(BaseSettings):
    """Main application settings."""

    fetch: FetchSettings = Field(default_factory=FetchSettings)
    purge: PurgeSettings = Field(default_factory=PurgeSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    unfurl: UnfurlSettings = Field(default_factory=UnfurlSettings)

    app_name: str = Field(default="FeedKeeper", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "env_nested_delimiter": "__",
        "env_prefix": "FEEDKEEPER_",
        "extra": "ignore",
    }

    def writable_paths(self) -> Dict[str, Path]:
        """Files the process writes, keyed by the setting that names them."""
        paths = {"database.path": Path(self.database.path)}
        if self.logging.file_path:
            paths["logging.file_path"] = Path(self.logging.file_path)
        return paths

    def validate_configuration(self) -> None:
        """Create parent directories of the database and log file.

        Raises:
            ConfigurationError: If a directory cannot be created
        """
        problems = []
        for key, path in self.writable_paths().items():
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                problems.append(f"{key}: {e}")

        if problems:
            raise ConfigurationError(
                f"Cannot prepare paths: {'; '.join(problems)}",
                config_key=problems[0].split(":", 1)[0],
            )

    def get_effective_log_level(self) -> str:
        """Get effective log level considering debug mode."""
        if self.debug:
            return "DEBUG"
        return self.logging.level.value


def load_settings(**overrides) -> FeedKeeperSettings:
    """Load settings from environment variables and defaults.

    Environment variables override Pydantic Field defaults; keyword
    overrides (typically from the CLI) override both.

    Returns:
        Loaded and validated settings

    Raises:
        ConfigurationError: If configuration is invalid
    """
    from dotenv import load_dotenv
    load_dotenv()

    try:
        settings = FeedKeeperSettings(**overrides)
        settings.validate_configuration()
        return settings

    except ValidationError as e:
        raise ConfigurationError(
            f"Failed to initialize settings: {e}",
            error_code=ErrorCode.CONFIG_INVALID
        ) from e
