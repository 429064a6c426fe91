"""Read path: cache -> select -> validate -> build -> store.

Concurrent misses for the same page may both regenerate; the second write
overwrites the first with an equivalent document.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from newsdesk.core.cache import INDEX_KEY, CacheManager, page_key
from newsdesk.core.config import ConfigProvider, FeedConfig
from newsdesk.core.selector import SelectionFilters, Selector
from newsdesk.core.sitemap_builder import DocumentPage, SitemapBuilder
from newsdesk.core.validation import ContentHashWindow, Validator, validate_document

if TYPE_CHECKING:
    from newsdesk.core.storage import DB
    from newsdesk.providers.content_store import ContentStore
    from newsdesk.providers.content_types import ContentItem

logger = logging.getLogger(__name__)

PUBLISH = "publish"


class PageNotFound(LookupError):
    """Requested page lies past the last page of the current corpus."""


def _day(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")


class SitemapGenerator:
    """Serves sitemap pages and the index, generating on cache miss.

    Raises ContentStoreError from every read method when the content
    store is unavailable; nothing is cached in that case.
    """

    def __init__(
        self,
        db: "DB",
        store: "ContentStore",
        config_provider: ConfigProvider,
        cache: CacheManager,
        site_url: str,
        hash_window: ContentHashWindow | None = None,
    ) -> None:
        self._db = db
        self._config_provider = config_provider
        self._cache = cache
        self._site_url = site_url.rstrip("/")
        self._selector = Selector(store)
        self._hashes = hash_window or ContentHashWindow()

    @property
    def cache(self) -> CacheManager:
        return self._cache

    def load_config(self) -> FeedConfig:
        config = FeedConfig.load(self._config_provider)
        self._cache.configure(config)
        return config

    def builder(self, config: FeedConfig | None = None) -> SitemapBuilder:
        return SitemapBuilder(config or self.load_config(), self._site_url)

    def get_sitemap_url(self) -> str:
        return self.builder().sitemap_url()

    # ==================== Read Path ====================

    def get_page(self, page: int, now: datetime | None = None) -> bytes:
        """Return page `page` (1-based), from cache when possible.

        Raises PageNotFound for pages past the end of the corpus; those are
        never generated or cached.
        """
        now = now or datetime.now(timezone.utc)
        config = self.load_config()

        cached = self._cache.get(page_key(page))
        self._db.record_cache_stat(_day(now), hit=cached is not None)
        if cached is not None:
            logger.debug(f"Sitemap page {page} served from cache")
            return cached

        pages = self.page_count(now=now, config=config)
        if page < 1 or page > pages:
            raise PageNotFound(f"Sitemap page {page} out of range 1..{pages}")

        document = self.generate_page(page, now=now, config=config)
        self._cache.set(page_key(page), document.content, config.cache_duration)
        return document.content

    def get_index(self, now: datetime | None = None) -> bytes:
        now = now or datetime.now(timezone.utc)
        config = self.load_config()

        cached = self._cache.get(INDEX_KEY)
        self._db.record_cache_stat(_day(now), hit=cached is not None)
        if cached is not None:
            return cached

        pages = self.page_count(now=now, config=config)
        content = self.builder(config).build_index(pages, generated_at=now)
        self._cache.set(INDEX_KEY, content, config.cache_duration)
        logger.info(f"Generated sitemap index with {pages} pages")
        return content

    def page_count(self, now: datetime | None = None, config: FeedConfig | None = None) -> int:
        """ceil(candidates / max_urls), never less than one page."""
        config = config or self.load_config()
        filters = SelectionFilters.from_config(config, page=1, now=now or datetime.now(timezone.utc))
        total = self._selector.count(filters)
        return max(1, math.ceil(total / config.max_urls))

    # ==================== Generation ====================

    def eligible_items(
        self, page: int, now: datetime, config: FeedConfig
    ) -> tuple[list["ContentItem"], dict[int, list[str]]]:
        """Selected items that pass validation, plus reasons for the rest."""
        self._selector.clear_cache()
        filters = SelectionFilters.from_config(config, page=page, now=now)
        candidates = self._selector.select(filters)

        validator = Validator(config, self._hashes)
        eligible: list[ContentItem] = []
        rejected: dict[int, list[str]] = {}
        for item in candidates:
            result = validator.validate(item, now=now)
            if result:
                eligible.append(item)
            else:
                rejected[item.id] = result.reasons
        return eligible, rejected

    def generate_page(
        self, page: int, now: datetime | None = None, config: FeedConfig | None = None
    ) -> DocumentPage:
        """Build page `page` from the content store, bypassing the cache."""
        now = now or datetime.now(timezone.utc)
        config = config or self.load_config()

        items, rejected = self.eligible_items(page, now, config)
        document = self.builder(config).build_page(page, items, generated_at=now)

        if rejected:
            logger.debug(f"Page {page}: {len(rejected)} candidates rejected by validation")
        if page == 1:
            self._db.set_posts_in_sitemap(_day(now), len(items))
        self._config_provider.set("last_sitemap_generation", now.isoformat())
        logger.info(f"Generated sitemap page {page} with {len(items)} items")
        return document

    def compliance_report(self, now: datetime | None = None) -> dict[str, Any]:
        """Build page 1 uncached and report every problem found."""
        now = now or datetime.now(timezone.utc)
        config = self.load_config()

        items, rejected = self.eligible_items(1, now, config)
        content = self.builder(config).build(items, generated_at=now)
        report = validate_document(content, max_urls=config.max_urls)
        return {
            **report.to_dict(),
            "sitemap_url": self.builder(config).sitemap_url(),
            "rejected_items": [{"item_id": item_id, "reasons": reasons} for item_id, reasons in rejected.items()],
        }

    # ==================== Invalidation ====================

    def invalidate(self) -> int:
        return self._cache.invalidate_all()

    def on_content_saved(self, before: "ContentItem | None", after: "ContentItem | None") -> bool:
        """Drop cached documents if a published item was created, edited or removed."""
        if any(snap is not None and snap.status == PUBLISH for snap in (before, after)):
            self.invalidate()
            return True
        return False

    def on_status_transition(self, old_status: str | None, new_status: str | None) -> bool:
        """Drop cached documents when an item enters or leaves publish state."""
        if old_status != new_status and PUBLISH in (old_status, new_status):
            self.invalidate()
            return True
        return False

    def robots_txt(self, existing: str = "") -> str:
        line = f"Sitemap: {self.get_sitemap_url()}"
        body = existing.rstrip("\n")
        return f"{body}\n{line}\n" if body else f"{line}\n"
