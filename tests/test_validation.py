"""Tests for validation.py"""

from datetime import datetime, timedelta, timezone

import pytest

from newsdesk.core.config import FeedConfig
from newsdesk.core.validation import (
    ContentHashWindow,
    Validator,
    check_url,
    content_hash,
    validate_document,
    validate_stock_tickers,
    word_count,
)
from newsdesk.providers.content_types import ContentItem

NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)

BODY = " ".join(
    f"Sentence number {i} reports what the council decided about the new harbour bridge today." for i in range(10)
)


def _item(**kwargs):
    defaults = dict(
        id=1,
        title="Council approves harbour bridge",
        url="https://news.example.com/harbour-bridge",
        published_at=NOW - timedelta(hours=2),
        content=BODY,
    )
    defaults.update(kwargs)
    return ContentItem(**defaults)


def _urlset(entries: str) -> bytes:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9" '
        'xmlns:news="http://www.google.com/schemas/sitemap-news/0.9" '
        'xmlns:image="http://www.google.com/schemas/sitemap-image/1.1">'
        f"{entries}</urlset>"
    ).encode()


def _entry(loc="https://news.example.com/a", date="2026-03-10T10:00:00+00:00", title="A", extra=""):
    return (
        f"<url><loc>{loc}</loc><news:news>"
        "<news:publication><news:name>Daily</news:name><news:language>en</news:language></news:publication>"
        f"<news:publication_date>{date}</news:publication_date><news:title>{title}</news:title>{extra}"
        "</news:news></url>"
    )


class TestHelpers:
    def test_word_count_strips_markup(self):
        assert word_count("<p>One <b>two</b></p>\n<p>three&nbsp;four</p>") == 4

    def test_content_hash_ignores_markup_and_whitespace(self):
        assert content_hash("<p>Hello   world</p>") == content_hash("Hello world")

    def test_check_url(self):
        assert check_url("https://news.example.com/a") is None
        assert "empty" in check_url("")
        assert "http(s)" in check_url("ftp://news.example.com/a")
        assert "malformed" in check_url("https:///nohost")


class TestStockTickers:
    def test_scenario_rejects_invalid_symbol(self):
        check = validate_stock_tickers("nasdaq:goog, bad!ticker")
        assert check.valid is False
        assert check.invalid == ("BAD!TICKER",)

    def test_normalizes_case(self):
        check = validate_stock_tickers("nasdaq:goog, NYSE:ibm")
        assert check.valid
        assert check.value == "NASDAQ:GOOG, NYSE:IBM"

    def test_symbol_length(self):
        assert validate_stock_tickers("ABCDE").valid
        assert not validate_stock_tickers("ABCDEF").valid

    def test_empty_is_valid(self):
        assert validate_stock_tickers("").valid
        assert validate_stock_tickers(None).tickers == ()


class TestValidator:
    """Tests for per-item eligibility rules."""

    def test_eligible_item(self):
        assert Validator(FeedConfig()).validate(_item(), now=NOW)

    def test_scenario_word_count_below_minimum(self):
        item = _item(content=" ".join(["word"] * 60))
        result = Validator(FeedConfig(min_word_count=80)).validate(item, now=NOW)
        assert not result.eligible
        assert "60" in result.reasons[0]
        assert "80" in result.reasons[0]

    def test_status_and_type(self):
        validator = Validator(FeedConfig())
        assert not validator.validate(_item(status="draft"), now=NOW)
        assert not validator.validate(_item(item_type="page"), now=NOW)

    @pytest.mark.parametrize("window", [1, 24, 48, 72])
    def test_freshness_boundary_inclusive(self, window):
        validator = Validator(FeedConfig(time_limit_hours=window))
        at_limit = _item(published_at=NOW - timedelta(hours=window))
        past_limit = _item(published_at=NOW - timedelta(hours=window, seconds=1))
        assert validator.validate(at_limit, now=NOW)
        assert not validator.validate(past_limit, now=NOW)

    def test_rules_short_circuit_in_order(self):
        item = _item(published_at=NOW - timedelta(hours=100), content="short", url="")
        result = Validator(FeedConfig()).validate(item, now=NOW)
        assert len(result.reasons) == 1
        assert "exceeds news limit" in result.reasons[0]

    def test_excluded_terms_and_authors(self):
        config = FeedConfig(excluded_categories=(5,), excluded_tags=(9,), excluded_authors=(3,))
        validator = Validator(config)
        assert not validator.validate(_item(category_ids=(5,)), now=NOW)
        assert not validator.validate(_item(tag_ids=(1, 9)), now=NOW)
        assert not validator.validate(_item(author_id=3), now=NOW)
        assert validator.validate(_item(author_id=4, category_ids=(6,)), now=NOW)

    def test_bad_url_and_empty_title(self):
        validator = Validator(FeedConfig())
        assert not validator.validate(_item(url="javascript:alert(1)"), now=NOW)
        assert not validator.validate(_item(title="  "), now=NOW)

    def test_require_featured_image(self):
        validator = Validator(FeedConfig(require_featured_image=True))
        assert not validator.validate(_item(), now=NOW)
        assert validator.validate(_item(meta={"image_url": "https://cdn.example.com/a.jpg"}), now=NOW)

    def test_quality_checks_detect_duplicates(self):
        validator = Validator(FeedConfig(quality_checks=True), ContentHashWindow())
        assert validator.validate(_item(id=1), now=NOW)
        assert validator.validate(_item(id=1), now=NOW)

        result = validator.validate(_item(id=2), now=NOW)
        assert not result
        assert "matches item 1" in result.reasons[0]

    def test_quality_checks_detect_thin_content(self):
        thin = ". ".join(["Go now"] * 100)
        result = Validator(FeedConfig(quality_checks=True, min_word_count=10)).validate(_item(content=thin), now=NOW)
        assert not result
        assert "Thin content" in result.reasons[0]

    def test_quality_checks_off_by_default(self):
        thin = ". ".join(["Go now"] * 100)
        assert Validator(FeedConfig(min_word_count=10)).validate(_item(content=thin), now=NOW)


class TestContentHashWindow:
    def test_clear_forgets(self):
        window = ContentHashWindow()
        assert window.check_and_record("abc", 1) is None
        assert window.check_and_record("abc", 2) == 1
        window.clear()
        assert window.check_and_record("abc", 2) is None


class TestValidateDocument:
    """Tests for document compliance checks."""

    def test_valid_document(self):
        report = validate_document(_urlset(_entry()))
        assert report.ok
        assert report.item_count == 1

    def test_accepts_z_suffix(self):
        assert validate_document(_urlset(_entry(date="2026-03-10T10:00:00Z"))).ok

    def test_collects_every_violation(self):
        doc = _urlset(_entry(loc="", date="2026-03-10", title="") + _entry(date="10/03/2026"))
        report = validate_document(doc)
        assert not report.ok
        assert len(report.violations) == 4
        assert any("missing <loc>" in v for v in report.violations)
        assert any("missing news title" in v for v in report.violations)
        assert sum("W3C" in v for v in report.violations) == 2

    def test_too_many_urls(self):
        report = validate_document(_urlset(_entry() * 3), max_urls=2)
        assert any("exceeding the 2 limit" in v for v in report.violations)

    def test_missing_news_block(self):
        doc = _urlset("<url><loc>https://news.example.com/a</loc></url>")
        assert "missing <news:news>" in validate_document(doc).violations[0]

    def test_optional_fields_checked(self):
        extra = (
            "<news:keywords>" + ",".join(f"k{i}" for i in range(11)) + "</news:keywords>"
            "<news:genres>Blog, Gossip</news:genres>"
            "<news:stock_tickers>NASDAQ:GOOG, bad!</news:stock_tickers>"
        )
        report = validate_document(_urlset(_entry(extra=extra)))
        assert len(report.violations) == 3

    def test_wrong_root_and_parse_error(self):
        assert "urlset" in validate_document(b"<rss/>").violations[0]
        assert "Invalid XML" in validate_document(b"<urlset>").violations[0]

    def test_sitemap_index(self):
        doc = (
            b'<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            b"<sitemap><loc>https://news.example.com/news-sitemap-1.xml</loc>"
            b"<lastmod>2026-03-10T10:00:00+00:00</lastmod></sitemap></sitemapindex>"
        )
        report = validate_document(doc)
        assert report.ok
        assert report.item_count == 1
