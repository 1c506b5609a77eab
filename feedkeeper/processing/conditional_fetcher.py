"""
Conditional Feed Fetcher
========================

Single HTTP retrieval of one feed URL, reusing stored cache validators
(If-None-Match / If-Modified-Since) and honoring 304 Not Modified.
The fetcher never touches storage.
"""

import asyncio
import ssl
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, AsyncIterator

import aiohttp
import certifi

from ..config.settings import DEFAULT_USER_AGENT
from ..database.models import CacheValidators
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import (
    ConfigurationError,
    ErrorCode,
    FeedError,
    FeedKeeperError,
    HTTPError,
    NetworkError,
)
from ..utils.timestamps import utc_now
from ..utils.validators import URLValidator


MAX_REDIRECTS = 10

ACCEPT_HEADER = (
    "application/rss+xml, application/atom+xml, application/feed+json, "
    "application/json, application/xml;q=0.9, text/xml;q=0.9, */*;q=0.8"
)


class FetchKind(str, Enum):
    """Kinds of fetch result."""
    NOT_MODIFIED = "not_modified"
    MODIFIED = "modified"
    FAILED = "failed"


@dataclass
class FetchResult:
    """Result of one conditional fetch."""

    feed_url: str
    kind: FetchKind
    status: Optional[int] = None
    body: Optional[bytes] = None
    content_type: Optional[str] = None
    validators: CacheValidators = field(default_factory=CacheValidators)
    error: Optional[FeedKeeperError] = None
    fetch_time: Optional[datetime] = None
    duration_seconds: float = 0.0

    def __post_init__(self):
        if not self.fetch_time:
            self.fetch_time = utc_now()

    @property
    def success(self) -> bool:
        return self.kind != FetchKind.FAILED

    @classmethod
    def not_modified(cls, feed_url: str, validators: CacheValidators, **kwargs) -> "FetchResult":
        return cls(feed_url=feed_url, kind=FetchKind.NOT_MODIFIED, status=304,
                   validators=validators, **kwargs)

    @classmethod
    def modified(cls, feed_url: str, body: bytes, validators: CacheValidators,
                 status: int = 200, content_type: Optional[str] = None, **kwargs) -> "FetchResult":
        return cls(feed_url=feed_url, kind=FetchKind.MODIFIED, status=status, body=body,
                   content_type=content_type, validators=validators, **kwargs)

    @classmethod
    def failed(cls, feed_url: str, error: FeedKeeperError, status: Optional[int] = None,
               **kwargs) -> "FetchResult":
        return cls(feed_url=feed_url, kind=FetchKind.FAILED, status=status, error=error, **kwargs)


class ConditionalFetcher:
    """HTTP fetcher that reuses cache validators."""

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        max_connections: int = 32,
        max_redirects: int = MAX_REDIRECTS,
    ):
        """Initialize the fetcher.

        Args:
            timeout_seconds: Per-request total timeout
            user_agent: User-Agent header sent with every request
            max_connections: Connection pool size for sessions opened here
            max_redirects: Redirects followed before giving up

        Raises:
            ConfigurationError: If the timeout is not positive
        """
        if not timeout_seconds or timeout_seconds <= 0:
            raise ConfigurationError(
                f"Fetch timeout must be positive, got {timeout_seconds}",
                config_key="fetch.timeout_seconds",
            )

        self.timeout_seconds = float(timeout_seconds)
        self.user_agent = user_agent
        self.max_connections = max(1, max_connections)
        self.max_redirects = max_redirects
        self.logger = get_logger_for_component("conditional_fetcher")

        self.ssl_context = ssl.create_default_context(cafile=certifi.where())

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[aiohttp.ClientSession]:
        """Get configured aiohttp session shared by all fetches of a run."""
        connector = aiohttp.TCPConnector(
            ssl=self.ssl_context,
            limit=self.max_connections * 2,
            limit_per_host=5,
            enable_cleanup_closed=True,
        )

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        headers = {
            "User-Agent": self.user_agent,
            "Accept": ACCEPT_HEADER,
            "Accept-Encoding": "gzip, deflate",
        }

        async with aiohttp.ClientSession(
            connector=connector, timeout=timeout, headers=headers
        ) as session:
            yield session

    def build_headers(self, validators: Optional[CacheValidators], force: bool = False) -> dict:
        """Conditional request headers; empty when forced or without validators."""
        if force or validators is None:
            return {}
        return validators.to_headers()

    async def fetch(
        self,
        url: str,
        validators: Optional[CacheValidators] = None,
        session: Optional[aiohttp.ClientSession] = None,
        force: bool = False,
    ) -> FetchResult:
        """Fetch one feed URL.

        Args:
            url: Feed URL
            validators: Validators stored from the previous successful fetch
            session: Shared session; a private one is opened when omitted
            force: Skip validator reuse and always download the full body

        Returns:
            FetchResult of kind NOT_MODIFIED, MODIFIED or FAILED. Network,
            timeout and HTTP status failures are returned, not raised.
        """
        if session is None:
            async with self.get_session() as own_session:
                return await self.fetch(url, validators, own_session, force=force)

        start_time = utc_now()
        validators = validators or CacheValidators()

        try:
            target = URLValidator.validate_feed_url(url)
        except FeedError as e:
            self.logger.warning(f"Refusing to fetch invalid feed URL {url!r}: {e}")
            return FetchResult.failed(url, e, fetch_time=start_time)

        headers = self.build_headers(validators, force=force)
        self.logger.debug(
            f"Fetching feed: {target} (conditional={bool(headers)}, force={force})"
        )

        try:
            async with session.get(
                target,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                allow_redirects=True,
                max_redirects=self.max_redirects,
            ) as response:
                status = response.status

                if status == 304:
                    self.logger.debug(f"Feed not modified: {target}")
                    return FetchResult.not_modified(
                        url,
                        self._merge_validators(validators, response),
                        fetch_time=start_time,
                        duration_seconds=self._elapsed(start_time),
                    )

                if not 200 <= status < 300:
                    reason = getattr(response, "reason", None) or ""
                    error = HTTPError(
                        f"HTTP {status} {reason}".strip(),
                        status=status,
                        feed_url=url,
                        error_code=self._error_code_for_status(status),
                    )
                    self.logger.warning(f"Feed fetch failed for {target}: {error}")
                    return FetchResult.failed(
                        url, error, status=status, fetch_time=start_time,
                        duration_seconds=self._elapsed(start_time),
                    )

                body = await response.read()
                new_validators = CacheValidators(
                    etag=response.headers.get("ETag"),
                    last_modified=response.headers.get("Last-Modified"),
                )

                duration = self._elapsed(start_time)
                self.logger.info(
                    f"Fetched {len(body)} bytes from {target} (HTTP {status}) in {duration:.2f}s"
                )

                return FetchResult.modified(
                    url,
                    body,
                    new_validators,
                    status=status,
                    content_type=response.headers.get("Content-Type"),
                    fetch_time=start_time,
                    duration_seconds=duration,
                )

        except asyncio.TimeoutError:
            error = NetworkError(
                f"Request timeout after {self.timeout_seconds}s",
                feed_url=url,
                error_code=ErrorCode.FEED_FETCH_TIMEOUT,
            )
            self.logger.warning(f"Feed fetch timeout for {url}: {error}")
            return FetchResult.failed(url, error, fetch_time=start_time,
                                      duration_seconds=self._elapsed(start_time))

        except aiohttp.ClientError as e:
            error = NetworkError(f"Fetch error: {e}", feed_url=url)
            self.logger.warning(f"Feed fetch failed for {url}: {error}")
            return FetchResult.failed(url, error, fetch_time=start_time,
                                      duration_seconds=self._elapsed(start_time))

    def _merge_validators(self, previous: CacheValidators, response) -> CacheValidators:
        """A 304 may carry refreshed validators; otherwise keep the stored ones."""
        return CacheValidators(
            etag=response.headers.get("ETag") or previous.etag,
            last_modified=response.headers.get("Last-Modified") or previous.last_modified,
        )

    def _error_code_for_status(self, status: int) -> ErrorCode:
        if status in (401, 403):
            return ErrorCode.FEED_ACCESS_DENIED
        if status in (404, 410):
            return ErrorCode.FEED_NOT_FOUND
        return ErrorCode.FEED_HTTP_ERROR

    def _elapsed(self, start_time: datetime) -> float:
        return (utc_now() - start_time).total_seconds()
