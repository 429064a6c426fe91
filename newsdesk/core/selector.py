"""Content selection for sitemap generation.

Translates feed filters into one content store query per page and
batch-loads metadata and terms for the whole candidate set, so the
number of round trips per page is constant regardless of item count.
Repeated selections with identical filters inside one generation cycle
are served from a per-cycle memo.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from newsdesk.providers.content_store import ContentQuery, ContentStore, ItemTerms
from newsdesk.providers.content_types import SITEMAP_META_KEYS, ContentItem

if TYPE_CHECKING:
    from newsdesk.core.config import FeedConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectionFilters:
    """Business-level selection filters for one sitemap page."""

    item_types: tuple[str, ...] = ("post",)
    freshness_hours: int = 48
    max_count: int = 1000
    offset: int = 0
    excluded_categories: tuple[int, ...] = ()
    excluded_tags: tuple[int, ...] = ()
    excluded_authors: tuple[int, ...] = ()
    priority_first: bool = True
    now: datetime | None = None

    @classmethod
    def from_config(cls, config: "FeedConfig", page: int = 1, now: datetime | None = None) -> SelectionFilters:
        return cls(
            item_types=config.included_types,
            freshness_hours=config.time_limit_hours,
            max_count=config.max_urls,
            offset=(max(page, 1) - 1) * config.max_urls,
            excluded_categories=config.excluded_categories,
            excluded_tags=config.excluded_tags,
            excluded_authors=config.excluded_authors,
            priority_first=config.breaking_news_first,
            now=now,
        )

    def to_query(self) -> ContentQuery:
        now = self.now or datetime.now(timezone.utc)
        return ContentQuery(
            item_types=self.item_types,
            statuses=("publish",),
            published_after=now - timedelta(hours=self.freshness_hours),
            excluded_category_ids=self.excluded_categories,
            excluded_tag_ids=self.excluded_tags,
            excluded_author_ids=self.excluded_authors,
            breaking_first=self.priority_first,
        )


class Selector:
    """Selects sitemap candidates from a ContentStore. Thread-safe."""

    def __init__(self, store: ContentStore) -> None:
        self._store = store
        self._memo: dict[SelectionFilters, list[ContentItem]] = {}
        self._lock = threading.Lock()

    def select(self, filters: SelectionFilters) -> list[ContentItem]:
        """Return ordered, metadata-enriched items for the filters.

        Raises:
            ContentStoreError: Propagated from the store.
        """
        with self._lock:
            cached = self._memo.get(filters)
        if cached is not None:
            logger.debug(f"Selector memo hit (offset={filters.offset})")
            return list(cached)

        items = self._store.query(filters.to_query(), limit=filters.max_count, offset=filters.offset)
        if items:
            items = self._enrich(items)
        if filters.priority_first:
            # Stable re-sort keeps the store's order within each group
            items.sort(key=lambda i: (not i.breaking_news, -i.published_at.timestamp()))

        with self._lock:
            self._memo[filters] = items
        logger.debug(f"Selected {len(items)} candidates (offset={filters.offset})")
        return list(items)

    def count(self, filters: SelectionFilters) -> int:
        """Total candidates across all pages for these filters."""
        return self._store.count(filters.to_query())

    def _enrich(self, items: list[ContentItem]) -> list[ContentItem]:
        ids = [i.id for i in items]
        meta = self._store.get_metadata(ids, SITEMAP_META_KEYS)
        terms = self._store.get_terms(ids)

        enriched = []
        for item in items:
            t = terms.get(item.id, ItemTerms())
            enriched.append(
                replace(
                    item,
                    categories=t.categories,
                    category_ids=t.category_ids,
                    tags=t.tags,
                    tag_ids=t.tag_ids,
                    meta=meta.get(item.id, {}),
                )
            )
        return enriched

    def clear_cache(self) -> None:
        """Start a new generation cycle."""
        with self._lock:
            self._memo.clear()
