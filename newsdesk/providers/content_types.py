"""Provider-agnostic content types for news items."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


# Characters not allowed in XML 1.0 text
_INVALID_XML_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def clean_text(value: str | None) -> str:
    """Text as it will appear in the sitemap: XML-invalid characters removed, stripped."""
    return _INVALID_XML_CHARS.sub("", value or "").strip()


class Genre(str, Enum):
    """Editorial genres accepted by the news sitemap protocol."""

    PRESS_RELEASE = "PressRelease"
    SATIRE = "Satire"
    BLOG = "Blog"
    OP_ED = "OpEd"
    OPINION = "Opinion"
    USER_GENERATED = "UserGenerated"

    @classmethod
    def parse(cls, value: str | None) -> Genre | None:
        """Return the matching genre, or None for empty/unknown values."""
        if not value:
            return None
        for genre in cls:
            if genre.value.lower() == value.strip().lower():
                return genre
        return None


# Metadata keys loaded in one batch per generation cycle
META_BREAKING_NEWS = "breaking_news"
META_GENRE = "genre"
META_STOCK_TICKERS = "stock_tickers"
META_IMAGE_URL = "image_url"
META_IMAGE_CAPTION = "image_caption"

SITEMAP_META_KEYS = (
    META_BREAKING_NEWS,
    META_GENRE,
    META_STOCK_TICKERS,
    META_IMAGE_URL,
    META_IMAGE_CAPTION,
)


@dataclass(frozen=True)
class ImageRef:
    """A featured image attached to a content item."""

    url: str
    caption: str | None = None


@dataclass(frozen=True)
class ContentItem:
    """A publishable unit from the content store. Read-only snapshot."""

    id: int
    title: str
    url: str
    published_at: datetime
    content: str = ""
    status: str = "publish"
    item_type: str = "post"
    author_id: int | None = None
    categories: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    category_ids: tuple[int, ...] = ()
    tag_ids: tuple[int, ...] = ()
    meta: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def breaking_news(self) -> bool:
        value = self.meta.get(META_BREAKING_NEWS)
        return str(value).strip().lower() in ("1", "true", "yes")

    @property
    def genre(self) -> Genre | None:
        return Genre.parse(self.meta.get(META_GENRE))

    @property
    def stock_tickers(self) -> str:
        return (self.meta.get(META_STOCK_TICKERS) or "").strip()

    @property
    def image(self) -> ImageRef | None:
        url = (self.meta.get(META_IMAGE_URL) or "").strip()
        if not url:
            return None
        return ImageRef(url=url, caption=self.meta.get(META_IMAGE_CAPTION) or None)

    @property
    def keywords(self) -> tuple[str, ...]:
        """Tags first, then categories, de-duplicated in order."""
        seen: list[str] = []
        for name in (*self.tags, *self.categories):
            if name and name not in seen:
                seen.append(name)
        return tuple(seen)
