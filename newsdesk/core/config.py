"""Feed configuration: key-value provider plus a typed, validated snapshot."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, Any

from newsdesk.providers.content_types import Genre, clean_text

if TYPE_CHECKING:
    from newsdesk.core.storage import DB

logger = logging.getLogger(__name__)

# Protocol hard limit for entries per sitemap page
MAX_URLS_CEILING = 1000


class ConfigProvider(ABC):
    """Typed get/set access to persisted settings."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...


class DBConfigProvider(ConfigProvider):
    """Stores JSON-encoded values in the app_settings table."""

    def __init__(self, db: "DB", prefix: str = "nds_") -> None:
        self._db = db
        self._prefix = prefix

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._db.get_setting(self._prefix + key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    def set(self, key: str, value: Any) -> None:
        self._db.set_setting(self._prefix + key, json.dumps(value))


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip() in ("1", "true", "True", "yes", "YES")


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_int_tuple(value: Any) -> tuple[int, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        value = [v for v in value.split(",") if v.strip()]
    out = []
    for v in value:
        try:
            out.append(int(v))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric exclusion id: {v!r}")
    return tuple(out)


def _as_str_tuple(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    return tuple(str(v).strip() for v in value if str(v).strip())


def _as_json_text(value: Any) -> str:
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value or "").strip()


def normalize_language(locale: str) -> str:
    """Reduce a locale like 'en_US' or 'de-DE' to its ISO 639-1 part."""
    lang = locale.replace("-", "_").split("_")[0].strip().lower()
    if len(lang) != 2 or not lang.isalpha():
        return "en"
    return lang


@dataclass(frozen=True)
class FeedConfig:
    """Validated feed configuration.

    Defaults follow the news sitemap protocol: 48h freshness window,
    1000 URLs per page, 30 minute cache, 60 second ping throttle.
    """

    publication_name: str = "News"
    language: str = "en"
    time_limit_hours: int = 48
    max_urls: int = MAX_URLS_CEILING
    min_word_count: int = 80
    included_types: tuple[str, ...] = ("post",)
    excluded_categories: tuple[int, ...] = ()
    excluded_tags: tuple[int, ...] = ()
    excluded_authors: tuple[int, ...] = ()
    breaking_news_first: bool = True
    default_genre: str = Genre.BLOG.value
    enable_image_sitemap: bool = True
    require_featured_image: bool = False
    quality_checks: bool = False
    cache_duration: int = 1800
    enable_object_cache: bool = False
    cdn_compatibility: bool = False
    custom_slug: str = "news-sitemap"
    ping_google: bool = True
    ping_bing: bool = True
    indexnow_enabled: bool = False
    indexnow_key: str = ""
    bing_api_key: str = ""
    gsc_credentials_json: str = ""
    ping_on_update: bool = True
    ping_throttle: int = 60

    @classmethod
    def load(cls, provider: ConfigProvider) -> FeedConfig:
        """Read every field from the provider and validate once."""
        defaults = cls()
        raw = {f.name: provider.get(f.name, getattr(defaults, f.name)) for f in fields(cls)}
        return cls.validated(**raw)

    @classmethod
    def validated(cls, **raw: Any) -> FeedConfig:
        defaults = cls()

        max_urls = _as_int(raw.get("max_urls"), defaults.max_urls)
        if max_urls > MAX_URLS_CEILING or max_urls < 1:
            logger.warning(f"max_urls={max_urls} outside 1..{MAX_URLS_CEILING}, clamping")
            max_urls = min(max(max_urls, 1), MAX_URLS_CEILING)

        genre = Genre.parse(str(raw.get("default_genre") or ""))
        slug = str(raw.get("custom_slug") or defaults.custom_slug).strip().strip("/")

        return cls(
            publication_name=clean_text(str(raw.get("publication_name") or "")) or defaults.publication_name,
            language=normalize_language(str(raw.get("language") or defaults.language)),
            time_limit_hours=max(_as_int(raw.get("time_limit_hours"), defaults.time_limit_hours), 1),
            max_urls=max_urls,
            min_word_count=max(_as_int(raw.get("min_word_count"), defaults.min_word_count), 0),
            included_types=_as_str_tuple(raw.get("included_types")) or defaults.included_types,
            excluded_categories=_as_int_tuple(raw.get("excluded_categories")),
            excluded_tags=_as_int_tuple(raw.get("excluded_tags")),
            excluded_authors=_as_int_tuple(raw.get("excluded_authors")),
            breaking_news_first=_as_bool(raw.get("breaking_news_first", defaults.breaking_news_first)),
            default_genre=genre.value if genre else defaults.default_genre,
            enable_image_sitemap=_as_bool(raw.get("enable_image_sitemap", defaults.enable_image_sitemap)),
            require_featured_image=_as_bool(raw.get("require_featured_image", False)),
            quality_checks=_as_bool(raw.get("quality_checks", False)),
            cache_duration=max(_as_int(raw.get("cache_duration"), defaults.cache_duration), 1),
            enable_object_cache=_as_bool(raw.get("enable_object_cache", False)),
            cdn_compatibility=_as_bool(raw.get("cdn_compatibility", False)),
            custom_slug=slug or defaults.custom_slug,
            ping_google=_as_bool(raw.get("ping_google", defaults.ping_google)),
            ping_bing=_as_bool(raw.get("ping_bing", defaults.ping_bing)),
            indexnow_enabled=_as_bool(raw.get("indexnow_enabled", False)),
            indexnow_key=str(raw.get("indexnow_key") or "").strip(),
            bing_api_key=str(raw.get("bing_api_key") or "").strip(),
            gsc_credentials_json=_as_json_text(raw.get("gsc_credentials_json")),
            ping_on_update=_as_bool(raw.get("ping_on_update", defaults.ping_on_update)),
            ping_throttle=max(_as_int(raw.get("ping_throttle"), defaults.ping_throttle), 0),
        )
