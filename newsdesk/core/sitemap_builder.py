"""News sitemap XML serialization.

Pure transform from validated items to bytes: no I/O beyond loading the
Jinja2 templates once, no caching. Free text is escaped by Jinja2's XML
autoescaping; URLs are additionally percent-encoded.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable
from urllib.parse import quote, urlsplit, urlunsplit

from jinja2 import Environment, FileSystemLoader, select_autoescape

from newsdesk.core.validation import MAX_KEYWORDS, validate_stock_tickers
from newsdesk.providers.content_types import Genre, clean_text

if TYPE_CHECKING:
    from newsdesk.core.config import FeedConfig
    from newsdesk.providers.content_types import ContentItem

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

jinja = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
)

_URL_SAFE = ":/?#[]@!$&'()*+,;=%~"


def keyword_list(terms: Iterable[str]) -> str:
    """Comma-separated keywords, at most MAX_KEYWORDS.

    Commas inside a term would split it into several keywords, so they
    become spaces.
    """
    out: list[str] = []
    for term in terms:
        term = " ".join(clean_text(term).replace(",", " ").split())
        if term and term not in out:
            out.append(term)
    return ", ".join(out[:MAX_KEYWORDS])


def escape_url(url: str) -> str:
    """Percent-encode characters that are unsafe in a sitemap <loc>."""
    parts = urlsplit(url.strip())
    netloc = parts.netloc
    try:
        netloc = netloc.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    return urlunsplit(
        (
            parts.scheme,
            netloc,
            quote(parts.path, safe=_URL_SAFE),
            quote(parts.query, safe=_URL_SAFE),
            quote(parts.fragment, safe=_URL_SAFE),
        )
    )


def format_w3c(dt: datetime) -> str:
    """YYYY-MM-DDTHH:MM:SS plus a +HH:MM offset; naive values are UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.replace(microsecond=0).isoformat()


@dataclass(frozen=True)
class DocumentPage:
    """One generated sitemap page. Immutable once built."""

    page: int
    generated_at: datetime
    item_count: int
    content: bytes


class SitemapBuilder:
    """Serializes items into news sitemap pages and the sitemap index."""

    def __init__(self, config: "FeedConfig", site_url: str) -> None:
        self._config = config
        self._site_url = site_url.rstrip("/")

    def page_url(self, page: int) -> str:
        return f"{self._site_url}/{self._config.custom_slug}-{page}.xml"

    def sitemap_url(self) -> str:
        return f"{self._site_url}/{self._config.custom_slug}.xml"

    def index_url(self) -> str:
        return f"{self._site_url}/{self._config.custom_slug}-index.xml"

    def _entry(self, item: "ContentItem") -> dict[str, Any]:
        cfg = self._config
        genre = item.genre or Genre.parse(cfg.default_genre)
        tickers = validate_stock_tickers(item.stock_tickers)

        images = []
        image = item.image
        if cfg.enable_image_sitemap and image is not None and image.url.startswith(("http://", "https://")):
            images.append(
                {
                    "loc": escape_url(image.url),
                    "caption": clean_text(image.caption or item.title),
                    "title": clean_text(item.title) if image.caption else None,
                }
            )

        return {
            "loc": escape_url(item.url),
            "publication_date": format_w3c(item.published_at),
            "title": clean_text(item.title),
            "keywords": keyword_list(item.keywords),
            "genre": genre.value if genre else "",
            "stock_tickers": tickers.value if tickers.valid else "",
            "images": images,
        }

    def build(self, items: list["ContentItem"], generated_at: datetime | None = None) -> bytes:
        generated_at = generated_at or datetime.now(timezone.utc)
        template = jinja.get_template("news_sitemap.xml")
        xml = template.render(
            generated_at=format_w3c(generated_at),
            publication_name=clean_text(self._config.publication_name),
            language=self._config.language,
            entries=[self._entry(i) for i in items],
        )
        return xml.encode("utf-8")

    def build_page(self, page: int, items: list["ContentItem"], generated_at: datetime | None = None) -> DocumentPage:
        generated_at = generated_at or datetime.now(timezone.utc)
        return DocumentPage(
            page=page,
            generated_at=generated_at,
            item_count=len(items),
            content=self.build(items, generated_at),
        )

    def build_index(self, page_count: int, generated_at: datetime | None = None) -> bytes:
        generated_at = generated_at or datetime.now(timezone.utc)
        lastmod = format_w3c(generated_at)
        template = jinja.get_template("sitemap_index.xml")
        xml = template.render(
            generated_at=lastmod,
            pages=[{"loc": self.page_url(n), "lastmod": lastmod} for n in range(1, page_count + 1)],
        )
        return xml.encode("utf-8")
