from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from email.utils import formatdate

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response

from newsdesk.core.cache import CacheManager, CacheProbe, default_probes
from newsdesk.core.config import DBConfigProvider, FeedConfig
from newsdesk.core.ping_service import PingService, ThrottleState, default_client
from newsdesk.core.ping_targets import IndexNowKeyStore
from newsdesk.core.settings import Settings
from newsdesk.core.sitemap_generator import PageNotFound, SitemapGenerator
from newsdesk.core.storage import DB, get_db, init_db
from newsdesk.providers.content_store import ContentStoreError, SQLiteContentStore

logger = logging.getLogger(__name__)

ROBOTS_BASE = "User-agent: *\nDisallow:\n"

PAGE_RE = re.compile(r"^(?P<slug>.+)-(?P<page>\d+)\.xml$")


@dataclass
class Services:
    db: DB
    settings: Settings
    config_provider: DBConfigProvider
    store: SQLiteContentStore
    generator: SitemapGenerator
    key_store: IndexNowKeyStore
    pings: PingService


def build_services(
    db: DB,
    settings: Settings,
    probes: list[CacheProbe] | None = None,
    client_factory=default_client,
) -> Services:
    provider = DBConfigProvider(db)
    store = SQLiteContentStore(db)
    config = FeedConfig.load(provider)
    cache = CacheManager(db, config, probes=default_probes(settings) if probes is None else probes)
    key_store = IndexNowKeyStore(provider, settings.verification_dir)
    return Services(
        db=db,
        settings=settings,
        config_provider=provider,
        store=store,
        generator=SitemapGenerator(db, store, provider, cache, settings.site_url),
        key_store=key_store,
        pings=PingService(
            db,
            store,
            provider,
            key_store,
            settings.site_url,
            throttle=ThrottleState(provider),
            client_factory=client_factory,
        ),
    )


_services: Services | None = None


def get_services() -> Services:
    assert _services is not None, "Services not initialized"
    return _services


app = FastAPI(title="newsdesk-sitemap")


@app.on_event("startup")
def _startup() -> None:
    global _services
    init_db()
    _services = build_services(get_db(), Settings.from_env())


@app.exception_handler(ContentStoreError)
def _content_store_unavailable(request: Request, exc: ContentStoreError) -> PlainTextResponse:
    logger.warning(f"Content store unavailable for {request.url.path}: {exc}")
    return PlainTextResponse(
        "Sitemap temporarily unavailable, please retry shortly.",
        status_code=503,
        headers={"Retry-After": "60"},
    )


def xml_response(content: bytes, config: FeedConfig) -> Response:
    headers = {"X-Robots-Tag": "noindex, follow"}
    if config.cdn_compatibility:
        headers["Cache-Control"] = f"public, max-age={config.cache_duration}"
        headers["Expires"] = formatdate(time.time() + config.cache_duration, usegmt=True)
    return Response(content=content, media_type="application/xml; charset=UTF-8", headers=headers)


# ==================== Public Read Path ====================


@app.get("/robots.txt", response_class=PlainTextResponse)
def robots_txt():
    return get_services().generator.robots_txt(ROBOTS_BASE)


@app.get("/api/validate")
def api_validate():
    """Compliance check of page 1, built fresh. Lists every violation."""
    return get_services().generator.compliance_report()


@app.get("/api/pings/recent")
def api_pings_recent(limit: int = 50, target: str | None = None):
    limit = max(1, min(limit, 500))
    return {"pings": get_services().pings.get_recent_pings(limit=limit, target=target)}


@app.get("/api/pings/stats")
def api_pings_stats(days: int = 7):
    s = get_services()
    stats = s.pings.get_ping_stats(days=max(days, 1))
    stats["analytics"] = s.db.get_analytics(time.strftime("%Y-%m-%d", time.gmtime(time.time() - days * 86400)))
    stats["last_sitemap_generation"] = s.config_provider.get("last_sitemap_generation")
    return stats


@app.post("/api/content/{item_id}/changed")
async def api_content_changed(item_id: int, old_status: str | None = None):
    """Content-change event: invalidate cached sitemaps and notify targets.

    Args:
        old_status: Status before the change, if the status changed.
    """
    s = get_services()
    item = s.store.get(item_id)
    new_status = item.status if item else None

    invalidated = s.generator.on_status_transition(old_status, new_status)
    if not invalidated:
        invalidated = s.generator.on_content_saved(None, item)

    if item is None or item.status != "publish":
        return {"invalidated": invalidated, "ping": {"status": "skipped", "message": "Item is not published"}}

    config = s.generator.load_config()
    if old_status == "publish" and not config.ping_on_update:
        return {"invalidated": invalidated, "ping": {"status": "skipped", "message": "Ping on update disabled"}}

    report = await s.pings.on_content_changed(item_id)
    return {"invalidated": invalidated, "ping": report.to_dict()}


@app.post("/api/ping/manual")
async def api_ping_manual():
    report = await get_services().pings.manual_ping()
    return report.to_dict()


@app.post("/api/ping/sweep-deferred")
async def api_ping_sweep_deferred():
    report = await get_services().pings.process_deferred()
    return report.to_dict()


@app.post("/api/ping/sweep-failed")
async def api_ping_sweep_failed():
    report = await get_services().pings.retry_failed()
    return report.to_dict()


@app.post("/api/cache/clear")
def api_cache_clear():
    removed = get_services().generator.invalidate()
    return {"cleared": True, "removed": removed}


@app.post("/api/indexnow/regenerate")
def api_indexnow_regenerate():
    key = get_services().key_store.regenerate()
    return {"key": key, "verification_file": f"{key}.txt"}


@app.get("/{filename}")
def sitemap_file(filename: str):
    """Sitemap pages, the sitemap index and the IndexNow verification file."""
    s = get_services()
    config = s.generator.load_config()
    slug = config.custom_slug

    if filename == f"{slug}.xml":
        return xml_response(s.generator.get_page(1), config)
    if filename == f"{slug}-index.xml":
        return xml_response(s.generator.get_index(), config)

    m = PAGE_RE.match(filename)
    if m and m.group("slug") == slug:
        try:
            content = s.generator.get_page(int(m.group("page")))
        except PageNotFound:
            raise HTTPException(status_code=404, detail="Sitemap page not found")
        return xml_response(content, config)

    if filename.endswith(".txt"):
        body = s.key_store.verification_body(filename[: -len(".txt")])
        if body is not None:
            return PlainTextResponse(body)

    raise HTTPException(status_code=404, detail="Not found")
