"""Notification service: throttled bursts, deferred queue, retry sweeps.

Per content-change event:
- Within the throttle window the item is queued once at now + interval.
- Otherwise every configured target is notified concurrently, one call
  per target, and one audit record is written per (item, target).
- Queued and failed items are re-evaluated only by externally triggered
  sweeps; nothing here retries on its own.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

import httpx

from newsdesk.core.config import FeedConfig
from newsdesk.core.ping_targets import (
    PING_TIMEOUT,
    IndexNowKeyStore,
    NotificationTarget,
    PingOutcome,
    TraditionalPingTarget,
    build_targets,
)
from newsdesk.core.sitemap_builder import SitemapBuilder
from newsdesk.core.validation import Validator

if TYPE_CHECKING:
    from newsdesk.core.config import ConfigProvider
    from newsdesk.core.storage import DB
    from newsdesk.providers.content_store import ContentStore
    from newsdesk.providers.content_types import ContentItem

logger = logging.getLogger(__name__)

# Failed-ping retry sweep
RETRY_LOOKBACK_HOURS = 24
RETRY_BATCH_SIZE = 10

# Deferred queue sweep
DEFERRED_BATCH_SIZE = 50

# Audit item id for feed-level pings not tied to one item
FEED_ITEM_ID = 0

USER_AGENT = "NewsDeskSitemap/1.0 (+https://github.com/newsdesk-sitemap)"


class DispatchStatus(str, Enum):
    DISPATCHED = "dispatched"
    DEFERRED = "deferred"
    SKIPPED = "skipped"  # Item not eligible or nothing to do
    THROTTLED = "throttled"  # Sweep found work but the window is still closed


@dataclass
class DispatchReport:
    """What one event or sweep did."""

    status: DispatchStatus
    item_ids: list[int] = field(default_factory=list)
    outcomes: list[PingOutcome] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "item_ids": list(self.item_ids),
            "message": self.message,
            "results": {
                o.target: {"success": o.success, "status_code": o.status_code, "message": o.message}
                for o in self.outcomes
            },
        }


class ThrottleState:
    """Time of the last notification burst and the lifetime burst counter.

    try_acquire() is a compare-and-set: of two overlapping callers inside
    the window only one gets True.
    """

    def __init__(self, provider: "ConfigProvider | None" = None) -> None:
        self._provider = provider
        self._lock = threading.Lock()
        self._last_burst = float(provider.get("last_ping_timestamp", 0) or 0) if provider else 0.0
        self._total = int(provider.get("total_pings_sent", 0) or 0) if provider else 0

    @property
    def last_burst(self) -> float:
        with self._lock:
            return self._last_burst

    @property
    def total_bursts(self) -> int:
        with self._lock:
            return self._total

    def remaining(self, interval: int, now: float) -> float:
        with self._lock:
            return max(0.0, self._last_burst + interval - now)

    def try_acquire(self, interval: int, now: float) -> bool:
        """Claim the next burst if the window has elapsed."""
        with self._lock:
            if self._last_burst and now - self._last_burst < interval:
                return False
            self._last_burst = now
            return True

    def complete(self, now: float) -> int:
        """Record a finished burst. Returns the lifetime count."""
        with self._lock:
            self._last_burst = now
            self._total += 1
            total = self._total
        if self._provider is not None:
            self._provider.set("last_ping_timestamp", now)
            self._provider.set("total_pings_sent", total)
        return total


def default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(PING_TIMEOUT),
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
    )


class PingService:
    """Notifies search engines about new or changed content."""

    def __init__(
        self,
        db: "DB",
        store: "ContentStore",
        config_provider: "ConfigProvider",
        key_store: IndexNowKeyStore,
        site_url: str,
        throttle: ThrottleState | None = None,
        client_factory: Callable[[], httpx.AsyncClient] = default_client,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db
        self._store = store
        self._config_provider = config_provider
        self._keys = key_store
        self._site_url = site_url.rstrip("/")
        self._throttle = throttle or ThrottleState(config_provider)
        self._client_factory = client_factory
        self._clock = clock

    @property
    def throttle(self) -> ThrottleState:
        return self._throttle

    def load_config(self) -> FeedConfig:
        return FeedConfig.load(self._config_provider)

    def targets(self, config: FeedConfig) -> list[NotificationTarget]:
        """Configured targets only; misconfigured ones are silently left out."""
        if config.indexnow_enabled:
            try:
                self._keys.ensure_key()
            except OSError as e:
                logger.warning(f"Could not prepare IndexNow verification file: {e}")
        targets = build_targets(config, self._keys, self._site_url)
        configured = [t for t in targets if t.is_configured()]
        skipped = [t.name for t in targets if not t.is_configured()]
        if skipped:
            logger.debug(f"Skipping unconfigured targets: {skipped}")
        return configured

    def _eligible(self, item: "ContentItem | None", config: FeedConfig, now: float) -> bool:
        if item is None:
            return False
        return bool(Validator(config).validate(item, now=_as_datetime(now)))

    # ==================== Events ====================

    async def on_content_changed(self, item_id: int, now: float | None = None) -> DispatchReport:
        """Dispatch now, or queue one deferred ping if inside the throttle window."""
        now = self._clock() if now is None else now
        config = self.load_config()

        item = self._store.get(item_id)
        if not self._eligible(item, config, now):
            return DispatchReport(DispatchStatus.SKIPPED, [item_id], message="Item is not eligible")

        if not self._throttle.try_acquire(config.ping_throttle, now):
            due_at = now + config.ping_throttle
            if self._db.queue_ping(item_id, due_at):
                logger.debug(f"Ping for item {item_id} deferred until {due_at:.0f}")
            else:
                logger.debug(f"Ping for item {item_id} already queued")
            return DispatchReport(DispatchStatus.DEFERRED, [item_id], message="Throttled")

        outcomes = await self._burst([item], config, action="ping", now=now)
        return DispatchReport(DispatchStatus.DISPATCHED, [item_id], outcomes)

    async def on_content_updated(
        self, before: "ContentItem", after: "ContentItem", now: float | None = None
    ) -> DispatchReport:
        """Ping for an edit to already-published content."""
        config = self.load_config()
        changed = before.title != after.title or before.content != after.content
        if not (config.ping_on_update and before.status == "publish" and after.status == "publish" and changed):
            return DispatchReport(DispatchStatus.SKIPPED, [after.id], message="No notifiable change")
        return await self.on_content_changed(after.id, now=now)

    async def manual_ping(self, now: float | None = None) -> DispatchReport:
        """Feed-level ping of the traditional endpoints, ignoring the throttle."""
        now = self._clock() if now is None else now
        config = self.load_config()
        targets = [t for t in self.targets(config) if isinstance(t, TraditionalPingTarget)]
        outcomes = await self._burst([], config, action="manual", now=now, targets=targets)
        return DispatchReport(DispatchStatus.DISPATCHED, [FEED_ITEM_ID], outcomes)

    # ==================== Sweeps ====================

    async def process_deferred(self, now: float | None = None) -> DispatchReport:
        """Re-evaluate queued items that are due; dispatch the still-eligible ones."""
        now = self._clock() if now is None else now
        config = self.load_config()

        due = self._db.get_due_pings(now, limit=DEFERRED_BATCH_SIZE)
        if not due:
            return DispatchReport(DispatchStatus.SKIPPED, message="Nothing due")

        items, dropped = self._partition(due, config, now, full_check=True)
        if dropped:
            self._db.dequeue_pings(dropped)
            logger.info(f"Dropped {len(dropped)} deferred pings for items no longer eligible")
        if not items:
            return DispatchReport(DispatchStatus.SKIPPED, dropped, message="No eligible items")

        ids = [i.id for i in items]
        if not self._throttle.try_acquire(config.ping_throttle, now):
            due_at = now + self._throttle.remaining(config.ping_throttle, now)
            for item_id in ids:
                self._db.reschedule_ping(item_id, due_at)
            return DispatchReport(DispatchStatus.THROTTLED, ids, message="Throttled")

        outcomes = await self._burst(items, config, action="deferred", now=now)
        self._db.dequeue_pings(ids)
        return DispatchReport(DispatchStatus.DISPATCHED, ids, outcomes)

    async def retry_failed(self, now: float | None = None) -> DispatchReport:
        """Retry items whose latest attempt in the lookback window failed."""
        now = self._clock() if now is None else now
        config = self.load_config()

        since = _as_datetime(now) - timedelta(hours=RETRY_LOOKBACK_HOURS)
        failed = self._db.get_failed_ping_items(since, limit=RETRY_BATCH_SIZE)
        items, _ = self._partition(failed, config, now, full_check=False)
        if not items:
            return DispatchReport(DispatchStatus.SKIPPED, message="No failed pings to retry")

        ids = [i.id for i in items]
        if not self._throttle.try_acquire(config.ping_throttle, now):
            return DispatchReport(DispatchStatus.THROTTLED, ids, message="Throttled")

        outcomes = await self._burst(items, config, action="retry", now=now)
        logger.info(f"Retried pings for {len(ids)} items")
        return DispatchReport(DispatchStatus.DISPATCHED, ids, outcomes)

    def _partition(
        self, item_ids: list[int], config: FeedConfig, now: float, full_check: bool
    ) -> tuple[list["ContentItem"], list[int]]:
        items, dropped = [], []
        for item_id in item_ids:
            item = self._store.get(item_id)
            if full_check:
                ok = self._eligible(item, config, now)
            else:
                ok = item is not None and item.status == "publish"
            if ok:
                items.append(item)
            else:
                dropped.append(item_id)
        return items, dropped

    # ==================== Dispatch ====================

    async def _burst(
        self,
        items: list["ContentItem"],
        config: FeedConfig,
        action: str,
        now: float,
        targets: list[NotificationTarget] | None = None,
    ) -> list[PingOutcome]:
        """Notify every target once, concurrently, then record the results.

        The burst is counted against the throttle even if recording fails.
        """
        outcomes: list[PingOutcome] = []
        try:
            targets = self.targets(config) if targets is None else targets
            urls = [i.url for i in items]
            sitemap_url = SitemapBuilder(config, self._site_url).sitemap_url()

            if targets:
                async with self._client_factory() as client:
                    results = await asyncio.gather(
                        *(t.submit(client, urls, sitemap_url) for t in targets),
                        return_exceptions=True,
                    )
                for target, result in zip(targets, results):
                    if isinstance(result, BaseException):
                        logger.error(f"Unexpected error notifying {target.name}: {result!r}")
                        result = PingOutcome(target=target.name, success=False, message=f"Unexpected error: {result}")
                    outcomes.append(result)

            self._record(items, outcomes, action, now)
        finally:
            total = self._throttle.complete(now)

        ok = sum(1 for o in outcomes if o.success)
        logger.info(f"Ping burst ({action}): {ok}/{len(outcomes)} targets succeeded, {len(items)} items, burst #{total}")
        return outcomes

    def _record(self, items: list["ContentItem"], outcomes: list[PingOutcome], action: str, now: float) -> None:
        timestamp = _as_datetime(now)
        day = timestamp.strftime("%Y-%m-%d")
        item_ids = [i.id for i in items] or [FEED_ITEM_ID]
        for outcome in outcomes:
            for item_id in item_ids:
                self._db.log_ping(
                    item_id=item_id,
                    action=action,
                    target=outcome.target,
                    response_code=outcome.status_code,
                    response_message=outcome.message,
                    success=outcome.success,
                    timestamp=timestamp,
                )
            self._db.record_ping_stat(day, outcome.success)

    # ==================== Audit Queries ====================

    def get_recent_pings(self, limit: int = 50, target: str | None = None) -> list[dict[str, Any]]:
        return self._db.get_recent_pings(limit=limit, target=target)

    def get_ping_stats(self, days: int = 7, now: float | None = None) -> dict[str, Any]:
        now = self._clock() if now is None else now
        since = _as_datetime(now) - timedelta(days=days)
        return {
            "by_target": self._db.get_ping_stats_by_target(since),
            "queued": self._db.list_queued_pings(),
            "last_ping_timestamp": self._throttle.last_burst,
            "total_pings_sent": self._throttle.total_bursts,
        }


def _as_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)
