"""Tests for sitemap_builder.py"""

import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, timezone

import pytest

from newsdesk.core.config import FeedConfig
from newsdesk.core.sitemap_builder import SitemapBuilder, escape_url, format_w3c
from newsdesk.core.validation import NEWS_NS, SITEMAP_NS, Validator, validate_document
from newsdesk.providers.content_types import ContentItem

NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)
SITE = "https://news.example.com"

BODY = " ".join(["The minister answered questions from reporters for an hour."] * 12)

NS = {"s": SITEMAP_NS, "n": NEWS_NS, "i": "http://www.google.com/schemas/sitemap-image/1.1"}


def _item(item_id=1, **kwargs):
    defaults = dict(
        id=item_id,
        title=f"Story {item_id}",
        url=f"{SITE}/story-{item_id}",
        published_at=NOW - timedelta(hours=1),
        content=BODY,
    )
    defaults.update(kwargs)
    return ContentItem(**defaults)


@pytest.fixture
def builder():
    return SitemapBuilder(FeedConfig(publication_name="Daily Planet", language="en"), SITE)


class TestHelpers:
    def test_format_w3c(self):
        assert format_w3c(datetime(2026, 3, 10, 9, 5, 7, 123456, tzinfo=timezone.utc)) == "2026-03-10T09:05:07+00:00"
        assert format_w3c(datetime(2026, 3, 10, 9, 5, 7)) == "2026-03-10T09:05:07+00:00"

    def test_escape_url(self):
        assert escape_url("https://news.example.com/a b?q=ü") == "https://news.example.com/a%20b?q=%C3%BC"
        assert escape_url("https://news.example.com/a?x=1&y=2") == "https://news.example.com/a?x=1&y=2"


class TestBuild:
    """Tests for page serialization."""

    def test_required_fields(self, builder):
        root = ET.fromstring(builder.build([_item()], generated_at=NOW))
        url = root.find("s:url", NS)
        assert url.find("s:loc", NS).text == f"{SITE}/story-1"
        assert url.find("n:news/n:publication/n:name", NS).text == "Daily Planet"
        assert url.find("n:news/n:publication/n:language", NS).text == "en"
        assert url.find("n:news/n:publication_date", NS).text == "2026-03-10T11:00:00+00:00"
        assert url.find("n:news/n:title", NS).text == "Story 1"

    def test_escapes_free_text(self, builder):
        xml = builder.build([_item(title="Q&A: <Live> \"updates\"", url=f"{SITE}/a?x=1&y=2")], generated_at=NOW)
        root = ET.fromstring(xml)
        assert root.find("s:url/n:news/n:title", NS).text == 'Q&A: <Live> "updates"'
        assert root.find("s:url/s:loc", NS).text == f"{SITE}/a?x=1&y=2"
        assert b"Q&amp;A: &lt;Live&gt;" in xml

    def test_keywords_capped_at_ten(self, builder):
        tags = tuple(f"tag{i}" for i in range(8))
        cats = ("World", "Politics", "Economy", "tag0")
        root = ET.fromstring(builder.build([_item(tags=tags, categories=cats)], generated_at=NOW))
        keywords = root.find("s:url/n:news/n:keywords", NS).text.split(", ")
        assert len(keywords) == 10
        assert keywords[:2] == ["tag0", "tag1"]
        assert keywords[-1] == "Politics"

    def test_genre_and_default(self, builder):
        root = ET.fromstring(builder.build([_item(1, meta={"genre": "satire"}), _item(2)], generated_at=NOW))
        genres = [g.text for g in root.findall("s:url/n:news/n:genres", NS)]
        assert genres == ["Satire", "Blog"]

    def test_invalid_tickers_omitted(self, builder):
        items = [_item(1, meta={"stock_tickers": "nasdaq:goog"}), _item(2, meta={"stock_tickers": "bad!ticker"})]
        root = ET.fromstring(builder.build(items, generated_at=NOW))
        tickers = [t.text for t in root.findall("s:url/n:news/n:stock_tickers", NS)]
        assert tickers == ["NASDAQ:GOOG"]

    def test_image_entries(self, builder):
        items = [
            _item(1, meta={"image_url": "https://cdn.example.com/a.jpg", "image_caption": "Harbour at dawn"}),
            _item(2, meta={"image_url": "https://cdn.example.com/b.jpg"}),
            _item(3, meta={"image_url": "data:image/png;base64,AAAA"}),
        ]
        root = ET.fromstring(builder.build(items, generated_at=NOW))
        urls = root.findall("s:url", NS)
        assert urls[0].find("i:image/i:caption", NS).text == "Harbour at dawn"
        assert urls[0].find("i:image/i:title", NS).text == "Story 1"
        assert urls[1].find("i:image/i:caption", NS).text == "Story 2"
        assert urls[1].find("i:image/i:title", NS) is None
        assert urls[2].find("i:image", NS) is None

    def test_images_disabled(self):
        builder = SitemapBuilder(FeedConfig(enable_image_sitemap=False), SITE)
        xml = builder.build([_item(meta={"image_url": "https://cdn.example.com/a.jpg"})], generated_at=NOW)
        assert b"image:image" not in xml

    def test_empty_page(self, builder):
        xml = builder.build([], generated_at=NOW)
        assert ET.fromstring(xml).findall("s:url", NS) == []
        assert validate_document(xml).ok

    def test_only_generation_time_differs(self, builder):
        items = [_item(i) for i in range(1, 4)]
        first = builder.build(items, generated_at=NOW).decode()
        second = builder.build(items, generated_at=NOW + timedelta(minutes=5)).decode()
        assert first != second
        assert first.splitlines()[2:] == second.splitlines()[2:]

    def test_build_page(self, builder):
        page = builder.build_page(2, [_item()], generated_at=NOW)
        assert page.page == 2
        assert page.item_count == 1
        assert page.content == builder.build([_item()], generated_at=NOW)


class TestBuildThenValidate:
    def test_valid_items_produce_compliant_document(self):
        config = FeedConfig(publication_name="Daily Planet")
        validator = Validator(config)
        items = [
            _item(1, title="Markets & <stuff>", tags=tuple(f"t{i}" for i in range(15)), meta={"breaking_news": "1"}),
            _item(2, url=f"{SITE}/pfad mit leerzeichen", meta={"genre": "OpEd", "stock_tickers": "nyse:ibm"}),
            _item(3, meta={"image_url": "https://cdn.example.com/x.jpg", "stock_tickers": "bad!"}),
            _item(4, published_at=NOW - timedelta(hours=48)),
        ]
        assert all(validator.validate(i, now=NOW) for i in items)

        report = validate_document(SitemapBuilder(config, SITE).build(items, generated_at=NOW))
        assert report.ok, report.violations
        assert report.item_count == 4

    def test_commas_inside_terms_do_not_add_keywords(self):
        config = FeedConfig(publication_name="Daily Planet")
        tags = (*(f"t{i}" for i in range(9)), "Smith, John")
        item = _item(tags=tags, categories=("Politics, Local",))
        assert Validator(config).validate(item, now=NOW)

        xml = SitemapBuilder(config, SITE).build([item], generated_at=NOW)
        report = validate_document(xml)
        assert report.ok, report.violations
        keywords = ET.fromstring(xml).find("s:url/n:news/n:keywords", NS).text.split(", ")
        assert keywords[-1] == "Smith John"
        assert len(keywords) == 10

    def test_title_of_control_characters_rejected(self):
        config = FeedConfig(publication_name="Daily Planet")
        assert not Validator(config).validate(_item(title="\x01\x02"), now=NOW)

    def test_blank_publication_name_falls_back(self):
        config = FeedConfig.validated(publication_name="  \x0b ")
        xml = SitemapBuilder(config, SITE).build([_item()], generated_at=NOW)
        assert validate_document(xml).ok
        assert config.publication_name == "News"


class TestBuildIndex:
    def test_one_entry_per_page(self, builder):
        root = ET.fromstring(builder.build_index(3, generated_at=NOW))
        locs = [s.find("s:loc", NS).text for s in root.findall("s:sitemap", NS)]
        assert locs == [f"{SITE}/news-sitemap-{n}.xml" for n in (1, 2, 3)]
        assert root.find("s:sitemap/s:lastmod", NS).text == "2026-03-10T12:00:00+00:00"

    def test_urls(self, builder):
        assert builder.sitemap_url() == f"{SITE}/news-sitemap.xml"
        assert builder.index_url() == f"{SITE}/news-sitemap-index.xml"
