"""Content store interface and its SQLite implementation.

The sitemap core never writes content; it reads point-in-time snapshots
through ContentStore and batch-loads per-item metadata in one round trip.
"""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, Iterable

from newsdesk.providers.content_types import SITEMAP_META_KEYS, ContentItem

if TYPE_CHECKING:
    from newsdesk.core.storage import DB

logger = logging.getLogger(__name__)


class ContentStoreError(Exception):
    """The content store could not be read. Retriable by the caller."""


@dataclass(frozen=True)
class ContentQuery:
    """Filters for a content store query."""

    item_types: tuple[str, ...] = ("post",)
    statuses: tuple[str, ...] = ("publish",)
    published_after: datetime | None = None
    excluded_category_ids: tuple[int, ...] = ()
    excluded_tag_ids: tuple[int, ...] = ()
    excluded_author_ids: tuple[int, ...] = ()
    breaking_first: bool = False


@dataclass(frozen=True)
class ItemTerms:
    """Categories and tags of one item, names and ids in display order."""

    categories: tuple[str, ...] = ()
    category_ids: tuple[int, ...] = ()
    tags: tuple[str, ...] = ()
    tag_ids: tuple[int, ...] = ()


class ContentStore(ABC):
    """Read-only access to publishable content."""

    @abstractmethod
    def query(self, query: ContentQuery, limit: int, offset: int = 0) -> list[ContentItem]:
        """Return items matching the query, without terms or metadata.

        Raises:
            ContentStoreError: If the store is unavailable.
        """
        ...

    @abstractmethod
    def count(self, query: ContentQuery) -> int:
        ...

    @abstractmethod
    def get_metadata(self, item_ids: list[int], keys: Iterable[str]) -> dict[int, dict[str, str]]:
        """Fetch the named metadata keys for all ids in one call."""
        ...

    @abstractmethod
    def get_terms(self, item_ids: list[int]) -> dict[int, ItemTerms]:
        """Fetch categories and tags for all ids in one call."""
        ...

    @abstractmethod
    def get(self, item_id: int) -> ContentItem | None:
        """Fetch one fully populated item, or None if it does not exist."""
        ...


class SQLiteContentStore(ContentStore):
    """ContentStore over the content_* tables of the application DB."""

    def __init__(self, db: "DB") -> None:
        self._db = db

    @staticmethod
    def _row_to_item(row: dict) -> ContentItem:
        from newsdesk.core.storage import from_db_time

        return ContentItem(
            id=row["id"],
            title=row["title"],
            url=row["url"],
            content=row["content"] or "",
            status=row["status"],
            item_type=row["item_type"],
            author_id=row["author_id"],
            published_at=from_db_time(row["published_at"]),
        )

    def query(self, query: ContentQuery, limit: int, offset: int = 0) -> list[ContentItem]:
        try:
            rows = self._db.query_content(query, limit=limit, offset=offset)
        except sqlite3.Error as e:
            raise ContentStoreError(f"Content query failed: {e}") from e
        return [self._row_to_item(r) for r in rows]

    def count(self, query: ContentQuery) -> int:
        try:
            return self._db.count_content(query)
        except sqlite3.Error as e:
            raise ContentStoreError(f"Content count failed: {e}") from e

    def get_metadata(self, item_ids: list[int], keys: Iterable[str]) -> dict[int, dict[str, str]]:
        try:
            return self._db.get_meta_batch(item_ids, keys)
        except sqlite3.Error as e:
            raise ContentStoreError(f"Metadata fetch failed: {e}") from e

    def get_terms(self, item_ids: list[int]) -> dict[int, ItemTerms]:
        try:
            raw = self._db.get_terms_batch(item_ids)
        except sqlite3.Error as e:
            raise ContentStoreError(f"Term fetch failed: {e}") from e

        result: dict[int, ItemTerms] = {}
        for item_id, terms in raw.items():
            cats = [(tid, name) for tax, tid, name in terms if tax == "category"]
            tags = [(tid, name) for tax, tid, name in terms if tax == "tag"]
            result[item_id] = ItemTerms(
                categories=tuple(name for _, name in cats if name),
                category_ids=tuple(tid for tid, _ in cats),
                tags=tuple(name for _, name in tags if name),
                tag_ids=tuple(tid for tid, _ in tags),
            )
        return result

    def get(self, item_id: int) -> ContentItem | None:
        try:
            row = self._db.get_content_row(item_id)
        except sqlite3.Error as e:
            raise ContentStoreError(f"Content lookup failed: {e}") from e
        if row is None:
            return None

        item = self._row_to_item(row)
        terms = self.get_terms([item_id]).get(item_id, ItemTerms())
        meta = self.get_metadata([item_id], SITEMAP_META_KEYS)
        return replace(
            item,
            categories=terms.categories,
            category_ids=terms.category_ids,
            tags=terms.tags,
            tag_ids=terms.tag_ids,
            meta=meta.get(item_id, {}),
        )

