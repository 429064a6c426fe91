"""Eligibility rules for sitemap items and compliance checks for documents.

Routine failures are returned as result objects, never raised:
- EligibilityResult for one content item
- DocumentReport for a serialized sitemap
- TickerCheck for a stock ticker field
"""

from __future__ import annotations

import hashlib
import html
import logging
import re
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from urllib.parse import urlparse

from cachetools import TTLCache

from newsdesk.core.config import MAX_URLS_CEILING
from newsdesk.providers.content_types import Genre, clean_text

if TYPE_CHECKING:
    from newsdesk.core.config import FeedConfig
    from newsdesk.providers.content_types import ContentItem

logger = logging.getLogger(__name__)

SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"
NEWS_NS = "http://www.google.com/schemas/sitemap-news/0.9"
IMAGE_NS = "http://www.google.com/schemas/sitemap-image/1.1"

MAX_KEYWORDS = 10

# Thin content: average characters per sentence below this is suspicious
MIN_AVG_SENTENCE_LENGTH = 15

# Duplicate detection window
HASH_WINDOW_SECONDS = 86400
HASH_WINDOW_SIZE = 10000

PUBLICATION_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(Z|[+-]\d{2}:\d{2})$")
TICKER_RE = re.compile(r"^(?:[A-Z]+:)?[A-Z]{1,5}$")
LANGUAGE_RE = re.compile(r"^[a-z]{2}$")
TAG_RE = re.compile(r"<[^>]+>")
SENTENCE_SPLIT_RE = re.compile(r"[.!?]")


def strip_tags(content: str) -> str:
    """Remove markup and decode entities."""
    return html.unescape(TAG_RE.sub(" ", content or ""))


def word_count(content: str) -> int:
    return len(strip_tags(content).split())


def content_hash(content: str) -> str:
    normalized = " ".join(strip_tags(content).split())
    return hashlib.md5(normalized.encode()).hexdigest()


@dataclass
class EligibilityResult:
    """Verdict for one item plus the reasons it was rejected."""

    eligible: bool
    reasons: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.eligible


@dataclass
class DocumentReport:
    """Every compliance violation found in a serialized document."""

    violations: list[str] = field(default_factory=list)
    item_count: int = 0

    @property
    def ok(self) -> bool:
        return not self.violations

    def to_dict(self) -> dict:
        return {"ok": self.ok, "item_count": self.item_count, "violations": list(self.violations)}


@dataclass(frozen=True)
class TickerCheck:
    """Normalized stock tickers, or the symbols that made the set invalid."""

    valid: bool
    tickers: tuple[str, ...] = ()
    invalid: tuple[str, ...] = ()

    @property
    def value(self) -> str:
        return ", ".join(self.tickers)


def validate_stock_tickers(raw: str | None) -> TickerCheck:
    """Check a comma-separated ticker field such as 'NASDAQ:GOOG, NYSE:IBM'.

    Symbols are uppercased; a single malformed symbol rejects the whole set.
    """
    if not raw or not raw.strip():
        return TickerCheck(valid=True)

    tickers = [t.strip().upper() for t in raw.split(",") if t.strip()]
    invalid = tuple(t for t in tickers if not TICKER_RE.match(t))
    if invalid:
        return TickerCheck(valid=False, invalid=invalid)
    return TickerCheck(valid=True, tickers=tuple(tickers))


class ContentHashWindow:
    """Remembers recent content hashes for best-effort duplicate detection.

    Only duplicates seen within the retention window are caught, and two
    concurrent generations may both record the same hash first.
    """

    def __init__(self, ttl: int = HASH_WINDOW_SECONDS, maxsize: int = HASH_WINDOW_SIZE) -> None:
        self._seen: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()

    def check_and_record(self, digest: str, item_id: int) -> int | None:
        """Return the id of another item with this hash, else record this one."""
        with self._lock:
            existing = self._seen.get(digest)
            if existing is not None and existing != item_id:
                return existing
            self._seen[digest] = item_id
            return None

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()


class Validator:
    """Applies eligibility rules in order, stopping at the first failure."""

    def __init__(self, config: "FeedConfig", hash_window: ContentHashWindow | None = None) -> None:
        self._config = config
        self._hashes = hash_window

    def validate(self, item: "ContentItem", now: datetime | None = None) -> EligibilityResult:
        now = now or datetime.now(timezone.utc)
        cfg = self._config

        # 1. Status and type
        if item.status != "publish" or item.item_type not in cfg.included_types:
            return EligibilityResult(
                False, [f"Item is not a published {'/'.join(cfg.included_types)} (status={item.status}, type={item.item_type})."]
            )

        # 2. Freshness window, inclusive at the limit
        age_hours = (now - item.published_at).total_seconds() / 3600
        if age_hours > cfg.time_limit_hours:
            return EligibilityResult(
                False, [f"Item age {age_hours:.1f}h exceeds news limit {cfg.time_limit_hours}h."]
            )

        # 3. Word count
        words = word_count(item.content)
        if words < cfg.min_word_count:
            return EligibilityResult(False, [f"Word count {words} < minimum {cfg.min_word_count}."])

        # 4. Exclusions
        excluded_cats = set(item.category_ids) & set(cfg.excluded_categories)
        if excluded_cats:
            return EligibilityResult(False, [f"Item belongs to excluded categories {sorted(excluded_cats)}."])
        excluded_tags = set(item.tag_ids) & set(cfg.excluded_tags)
        if excluded_tags:
            return EligibilityResult(False, [f"Item has excluded tags {sorted(excluded_tags)}."])
        if item.author_id is not None and item.author_id in cfg.excluded_authors:
            return EligibilityResult(False, [f"Author {item.author_id} is excluded."])

        # 5. Required fields and canonical URL
        if not clean_text(TAG_RE.sub("", item.title or "")):
            return EligibilityResult(False, ["Title is empty."])
        url_problem = check_url(item.url)
        if url_problem:
            return EligibilityResult(False, [url_problem])

        if cfg.require_featured_image and item.image is None:
            return EligibilityResult(False, ["Missing required featured image."])

        if cfg.quality_checks:
            issues = self.quality_issues(item)
            if issues:
                return EligibilityResult(False, issues)

        return EligibilityResult(True)

    def quality_issues(self, item: "ContentItem") -> list[str]:
        """Advisory heuristics: duplicate content and thin content."""
        issues = []
        text = strip_tags(item.content)

        if self._hashes is not None:
            other = self._hashes.check_and_record(content_hash(item.content), item.id)
            if other is not None:
                issues.append(f"Duplicate content detected (matches item {other}).")

        sentences = [s for s in SENTENCE_SPLIT_RE.split(text) if s.strip()]
        avg = len(text.strip()) / max(len(sentences), 1)
        if avg < MIN_AVG_SENTENCE_LENGTH:
            issues.append(f"Thin content pattern: average sentence length {avg:.1f} chars.")

        return issues


def check_url(url: str | None) -> str | None:
    """Return a problem description, or None if the URL is usable."""
    if not url or not url.strip():
        return "Canonical URL is empty."
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https"):
        return f"Canonical URL must use http(s): {url}"
    if not parsed.netloc or " " in parsed.netloc:
        return f"Canonical URL is malformed: {url}"
    return None


def _text(el: ET.Element | None) -> str:
    return (el.text or "").strip() if el is not None else ""


def validate_document(xml: bytes | str, max_urls: int = MAX_URLS_CEILING) -> DocumentReport:
    """Parse a sitemap or sitemap index and collect every violation."""
    report = DocumentReport()
    try:
        root = ET.fromstring(xml)
    except ET.ParseError as e:
        report.violations.append(f"Invalid XML structure: {e}")
        return report

    if root.tag == f"{{{SITEMAP_NS}}}sitemapindex":
        return _validate_index(root, report)
    if root.tag != f"{{{SITEMAP_NS}}}urlset":
        report.violations.append(f"Missing <urlset> root element (found {root.tag}).")
        return report

    ns = {"s": SITEMAP_NS, "n": NEWS_NS, "i": IMAGE_NS}
    urls = root.findall("s:url", ns)
    report.item_count = len(urls)
    if len(urls) > max_urls:
        report.violations.append(f"Sitemap has {len(urls)} URLs, exceeding the {max_urls} limit.")

    for pos, url in enumerate(urls, start=1):
        where = f"url #{pos}"
        loc = _text(url.find("s:loc", ns))
        if not loc:
            report.violations.append(f"{where}: missing <loc>.")
        else:
            where = f"url #{pos} ({loc})"

        news = url.find("n:news", ns)
        if news is None:
            report.violations.append(f"{where}: missing <news:news>.")
            continue

        if not _text(news.find("n:publication/n:name", ns)):
            report.violations.append(f"{where}: missing publication name.")
        language = _text(news.find("n:publication/n:language", ns))
        if not LANGUAGE_RE.match(language):
            report.violations.append(f"{where}: publication language {language!r} is not a two-letter code.")

        pub_date = _text(news.find("n:publication_date", ns))
        if not pub_date:
            report.violations.append(f"{where}: missing publication date.")
        elif not PUBLICATION_DATE_RE.match(pub_date):
            report.violations.append(f"{where}: publication date {pub_date!r} is not in W3C datetime format.")

        if not _text(news.find("n:title", ns)):
            report.violations.append(f"{where}: missing news title.")

        keywords = news.find("n:keywords", ns)
        if keywords is not None:
            terms = [k for k in _text(keywords).split(",") if k.strip()]
            if len(terms) > MAX_KEYWORDS:
                report.violations.append(f"{where}: {len(terms)} keywords exceed the limit of {MAX_KEYWORDS}.")

        genres = news.find("n:genres", ns)
        if genres is not None:
            for g in (g.strip() for g in _text(genres).split(",")):
                if Genre.parse(g) is None:
                    report.violations.append(f"{where}: unknown genre {g!r}.")

        tickers = news.find("n:stock_tickers", ns)
        if tickers is not None:
            check = validate_stock_tickers(_text(tickers))
            if not check.valid:
                report.violations.append(f"{where}: invalid stock tickers {', '.join(check.invalid)}.")

        for image in url.findall("i:image", ns):
            if not _text(image.find("i:loc", ns)):
                report.violations.append(f"{where}: image entry without <image:loc>.")

    return report


def _validate_index(root: ET.Element, report: DocumentReport) -> DocumentReport:
    ns = {"s": SITEMAP_NS}
    sitemaps = root.findall("s:sitemap", ns)
    report.item_count = len(sitemaps)
    for pos, sm in enumerate(sitemaps, start=1):
        if not _text(sm.find("s:loc", ns)):
            report.violations.append(f"sitemap #{pos}: missing <loc>.")
        lastmod = _text(sm.find("s:lastmod", ns))
        if lastmod and not PUBLICATION_DATE_RE.match(lastmod):
            report.violations.append(f"sitemap #{pos}: lastmod {lastmod!r} is not in W3C datetime format.")
    return report
