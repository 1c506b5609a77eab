"""
FeedKeeper Input Validators
==========================

URL validation for feed subscriptions and item links, and the text
normalization used for fingerprints and content hashes.
"""

import re
import html
from urllib.parse import urlparse, urlunparse
from typing import Optional

from .exceptions import FeedError, ErrorCode


_WHITESPACE_RE = re.compile(r'\s+')
_CONTROL_CHARS_RE = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')


class URLValidator:
    """URL validation and canonicalization utilities."""

    ALLOWED_SCHEMES = {'http', 'https'}

    @classmethod
    def validate_feed_url(cls, url: str) -> str:
        """Validate and canonicalize a feed URL.

        Scheme and host are lower-cased and the fragment dropped; the path
        and query are kept as given since servers may treat them case
        sensitively.

        Args:
            url: URL to validate

        Returns:
            Canonical URL

        Raises:
            FeedError: If URL is invalid
        """
        if not url or not isinstance(url, str):
            raise FeedError(
                "URL is required and must be a string",
                error_code=ErrorCode.FEED_INVALID_URL,
                recoverable=False,
            )

        url = url.strip()

        try:
            parsed = urlparse(url)
        except ValueError as e:
            raise FeedError(
                f"Invalid URL format: {e}",
                feed_url=url,
                error_code=ErrorCode.FEED_INVALID_URL,
                recoverable=False,
            ) from e

        if parsed.scheme.lower() not in cls.ALLOWED_SCHEMES:
            raise FeedError(
                f"URL scheme must be {' or '.join(sorted(cls.ALLOWED_SCHEMES))}",
                feed_url=url,
                error_code=ErrorCode.FEED_INVALID_URL,
                recoverable=False,
            )

        if not parsed.netloc:
            raise FeedError(
                "URL must include a hostname",
                feed_url=url,
                error_code=ErrorCode.FEED_INVALID_URL,
                recoverable=False,
            )

        return urlunparse(parsed._replace(
            scheme=parsed.scheme.lower(),
            netloc=parsed.netloc.lower(),
            fragment=''
        ))

    @classmethod
    def is_http_url(cls, url: Optional[str]) -> bool:
        """Check whether a link is an absolute http(s) URL."""
        if not url:
            return False
        try:
            parsed = urlparse(url.strip())
        except ValueError:
            return False
        return parsed.scheme.lower() in cls.ALLOWED_SCHEMES and bool(parsed.netloc)


class TextNormalizer:
    """Text normalization for hashing and display."""

    @classmethod
    def collapse_whitespace(cls, text: Optional[str]) -> str:
        """Strip control characters and collapse whitespace runs to one space."""
        if not text:
            return ""
        text = _CONTROL_CHARS_RE.sub('', text)
        return _WHITESPACE_RE.sub(' ', text).strip()

    @classmethod
    def normalize_for_hash(cls, text: Optional[str]) -> str:
        """Normalize text so formatting-only upstream changes hash identically.

        HTML entities are unescaped before whitespace is collapsed, so
        ``"A&amp;B"`` and ``"A&B"`` as well as ``" A  B "`` and ``"A B"``
        normalize the same way.
        """
        if not text:
            return ""
        return cls.collapse_whitespace(html.unescape(text))
