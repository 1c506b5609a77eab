"""
Tests for the Feed Parser
=========================

Format detection, GUID fallback fingerprints, date handling, item caps and
parse failures.
"""

import re
from datetime import datetime, timezone

import pytest

from feedkeeper.processing.feed_parser import (
    FeedParser,
    AtomAdapter,
    JSONFeedAdapter,
    FormatAdapter,
    compute_fingerprint,
    compute_content_hash,
    select_adapter,
)
from feedkeeper.utils.exceptions import ParseError, ErrorCode

from conftest import build_rss, build_atom, FEED_URL


HEX_SHA256 = re.compile(r"^[0-9a-f]{64}$")


class TestFeedParser:
    """Test suite for FeedParser.parse."""

    @pytest.fixture
    def parser(self):
        return FeedParser()

    def test_parse_rss_items_in_feed_order(self, parser):
        """RSS items keep their GUIDs, links and order."""
        body = build_rss([
            {"guid": "1", "title": "First", "link": "https://example.com/1"},
            {"guid": "2", "title": "Second", "link": "https://example.com/2"},
        ])

        feed = parser.parse(body, "application/rss+xml", FEED_URL)

        assert feed.format == "rss"
        assert feed.version.startswith("rss")
        assert feed.title == "Example Feed"
        assert [item.guid for item in feed.items] == ["1", "2"]
        assert feed.items[0].title == "First"
        assert feed.items[0].link == "https://example.com/1"
        assert not feed.items[0].guid_is_fingerprint
        assert feed.warnings == []

    def test_parse_atom_uses_alternate_link_and_entry_id(self, parser):
        body = build_atom([
            {
                "id": "tag:example.org,2024:1",
                "title": "Atom entry",
                "link": "https://example.org/posts/1",
                "content": "&lt;p&gt;Hello&lt;/p&gt;",
                "updated": "2024-02-01T10:00:00Z",
            }
        ])

        feed = parser.parse(body, "application/atom+xml", FEED_URL)

        assert feed.format == "atom"
        item = feed.items[0]
        assert item.guid == "tag:example.org,2024:1"
        assert item.link == "https://example.org/posts/1"
        assert "Hello" in item.content
        assert item.published_at == datetime(2024, 2, 1, 10, 0, tzinfo=timezone.utc)

    def test_missing_guid_falls_back_to_fingerprint(self, parser):
        body = build_rss([{"title": "No guid here", "link": "https://example.com/a"}])

        item = parser.parse(body, feed_url=FEED_URL).items[0]

        assert item.guid_is_fingerprint
        assert HEX_SHA256.match(item.guid)
        assert item.guid == compute_fingerprint("https://example.com/a", "No guid here")

    def test_fingerprint_stable_across_repeated_parses(self, parser):
        body = build_rss([{"title": "Stable", "link": "https://example.com/s"}])

        first = parser.parse(body, feed_url=FEED_URL).items[0]
        second = parser.parse(body, feed_url=FEED_URL).items[0]

        assert first.guid == second.guid
        assert first.content_hash == second.content_hash

    def test_fingerprint_ignores_whitespace_reformatting_upstream(self, parser):
        tidy = build_rss([{"title": "Hello World", "link": "https://example.com/h"}])
        messy = build_rss([{"title": "\n   Hello \t  World  \n", "link": "  https://example.com/h  "}])

        assert (
            parser.parse(tidy, feed_url=FEED_URL).items[0].guid
            == parser.parse(messy, feed_url=FEED_URL).items[0].guid
        )

    def test_missing_published_date_keeps_item(self, parser):
        body = build_rss([{"guid": "undated", "title": "Undated"}])

        feed = parser.parse(body, feed_url=FEED_URL)

        assert len(feed.items) == 1
        assert feed.items[0].published_at is None

    def test_published_date_is_utc(self, parser):
        published = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        body = build_rss([{"guid": "d", "title": "Dated", "published": published}])

        item = parser.parse(body, feed_url=FEED_URL).items[0]

        assert item.published_at == published

    def test_max_items_caps_in_feed_order(self):
        body = build_rss([{"guid": str(n), "title": f"Item {n}"} for n in range(5)])

        feed = FeedParser(max_items=2).parse(body, feed_url=FEED_URL)

        assert [item.guid for item in feed.items] == ["0", "1"]

    def test_zero_max_items_means_unlimited(self):
        body = build_rss([{"guid": str(n), "title": f"Item {n}"} for n in range(150)])

        assert len(FeedParser(max_items=0).parse(body, feed_url=FEED_URL).items) == 150

    def test_empty_channel_is_not_an_error(self, parser):
        feed = parser.parse(build_rss([]), feed_url=FEED_URL)

        assert feed.items == []
        assert feed.title == "Example Feed"

    @pytest.mark.parametrize(
        "body",
        [
            b"this is definitely not a feed",
            b"<html><body><p>Just a web page</p></body></html>",
        ],
    )
    def test_unparseable_body_raises_parse_error(self, parser, body):
        with pytest.raises(ParseError) as exc_info:
            parser.parse(body, "text/html", FEED_URL)

        assert exc_info.value.error_code == ErrorCode.FEED_PARSE_ERROR
        assert exc_info.value.feed_url == FEED_URL

    def test_empty_body_raises_parse_error(self, parser):
        with pytest.raises(ParseError):
            parser.parse(b"", feed_url=FEED_URL)

    def test_empty_channel_without_content_type_only_warns(self, parser):
        feed = parser.parse(build_rss([]), feed_url=FEED_URL)

        assert any("NonXMLContentType" in warning for warning in feed.warnings)

    def test_non_xml_content_type_keeps_items_and_warns(self, parser):
        body = build_rss([{"guid": "a", "title": "A"}, {"guid": "b", "title": "B"}])

        feed = parser.parse(body, "text/html", FEED_URL)

        assert [item.guid for item in feed.items] == ["a", "b"]
        assert any("NonXMLContentType" in warning for warning in feed.warnings)

    def test_malformed_xml_with_entries_raises_parse_error(self, parser):
        body = build_rss([
            {"guid": "ok", "title": "Fine"},
            {"guid": "fish", "title": "Fish", "description": "Fish & Chips"},
        ])

        with pytest.raises(ParseError) as exc_info:
            parser.parse(body, "application/rss+xml", FEED_URL)

        assert exc_info.value.error_code == ErrorCode.FEED_PARSE_ERROR

    def test_truncated_body_raises_parse_error(self, parser):
        body = build_rss([{"guid": str(n), "title": f"Item {n}"} for n in range(1, 6)])
        truncated = body[: body.index(b"<title>Item 3") + 10]

        with pytest.raises(ParseError):
            parser.parse(truncated, "application/rss+xml", FEED_URL)

    def test_entry_without_identity_is_skipped_with_warning(self, parser):
        body = build_rss([
            {"description": "Nothing to identify this entry by"},
            {"guid": "ok", "title": "Fine"},
        ])

        feed = parser.parse(body, feed_url=FEED_URL)

        assert [item.guid for item in feed.items] == ["ok"]
        assert any("entry 0" in warning for warning in feed.warnings)


class TestFingerprint:
    """Fallback GUID and content hash normalization."""

    @pytest.mark.parametrize(
        "link,title",
        [
            ("https://example.com/a", "Hello World"),
            ("  https://example.com/a", "Hello World  "),
            ("https://example.com/a\n", "Hello\n\tWorld"),
            ("https://example.com/a", "Hello&#32;World"),
            ("https://example.com/a", "  Hello    World  "),
        ],
    )
    def test_whitespace_and_entity_variants_share_fingerprint(self, link, title):
        assert compute_fingerprint(link, title) == compute_fingerprint(
            "https://example.com/a", "Hello World"
        )

    @pytest.mark.parametrize(
        "link,title",
        [
            ("https://example.com/b", "Hello World"),
            ("https://example.com/a", "Hello Worlds"),
            ("https://example.com/a", "hello world"),
        ],
    )
    def test_real_changes_change_fingerprint(self, link, title):
        assert compute_fingerprint(link, title) != compute_fingerprint(
            "https://example.com/a", "Hello World"
        )

    def test_fields_do_not_bleed_into_each_other(self):
        assert compute_fingerprint("ab", "c") != compute_fingerprint("a", "bc")

    def test_content_hash_detects_content_changes(self):
        base = compute_content_hash("T", "https://x", None, "summary", "body")

        assert base == compute_content_hash(" T ", "https://x", None, "summary ", "body")
        assert base != compute_content_hash("T2", "https://x", None, "summary", "body")
        assert base != compute_content_hash("T", "https://x", None, "summary", "new body")
        assert base != compute_content_hash(
            "T", "https://x", datetime(2024, 1, 1, tzinfo=timezone.utc), "summary", "body"
        )


class TestSelectAdapter:
    """Format family sniffing."""

    @pytest.mark.parametrize(
        "version,content_type,expected",
        [
            ("rss20", None, FormatAdapter),
            ("rss10", "application/atom+xml", FormatAdapter),
            ("atom10", None, AtomAdapter),
            ("json11", None, JSONFeedAdapter),
            ("", "application/atom+xml; charset=utf-8", AtomAdapter),
            ("", "application/feed+json", JSONFeedAdapter),
            ("", None, FormatAdapter),
        ],
    )
    def test_adapter_selection(self, version, content_type, expected):
        assert type(select_adapter(version, content_type)) is expected

    def test_json_adapter_falls_back_to_external_url(self):
        adapter = JSONFeedAdapter()

        assert adapter.link({"external_url": "https://elsewhere.example/"}) == "https://elsewhere.example/"
        assert adapter.link({"link": "https://example.com/p", "external_url": "x"}) == "https://example.com/p"
