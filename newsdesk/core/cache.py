"""Multi-backend cache for generated sitemap documents.

Backends share the CacheBackend interface. CacheManager picks one per
process by probing, in order, Redis then Memcached (only when the external
object cache is enabled) and falls back to the durable SQLite store.
Backend errors never reach callers: reads degrade to a miss, writes to a
no-op.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable

import redis
from pymemcache.client.base import Client as MemcacheClient
from pymemcache.exceptions import MemcacheError

if TYPE_CHECKING:
    from newsdesk.core.config import FeedConfig
    from newsdesk.core.settings import Settings
    from newsdesk.core.storage import DB

logger = logging.getLogger(__name__)

CACHE_PREFIX = "nds_sitemap_"

INDEX_KEY = "index"


def page_key(page: int) -> str:
    return f"page_{page}"


class CacheBackend(ABC):
    """Uniform get/set/invalidate interface over one storage engine."""

    name: str = "abstract"

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        """Return the stored value, or None if absent or expired."""
        ...

    @abstractmethod
    def set(self, key: str, value: bytes, ttl: int) -> bool:
        ...

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with prefix. Returns keys removed, if known."""
        ...


class DurableBackend(CacheBackend):
    """SQLite-backed store; always available."""

    name = "durable"

    def __init__(self, db: "DB", clock: Callable[[], float] = time.time) -> None:
        self._db = db
        self._clock = clock

    def get(self, key: str) -> bytes | None:
        return self._db.cache_get(key, now=self._clock())

    def set(self, key: str, value: bytes, ttl: int) -> bool:
        now = self._clock()
        self._db.cache_purge_expired(now)
        self._db.cache_set(key, value, expires_at=now + ttl)
        return True

    def delete_prefix(self, prefix: str) -> int:
        removed = self._db.cache_delete_prefix(prefix)
        self._db.cache_purge_expired(self._clock())
        return removed


class RedisBackend(CacheBackend):
    name = "redis"

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    def get(self, key: str) -> bytes | None:
        try:
            return self._client.get(key)
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Redis get failed for {key}: {e}")
            return None

    def set(self, key: str, value: bytes, ttl: int) -> bool:
        try:
            return bool(self._client.setex(key, ttl, value))
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Redis set failed for {key}: {e}")
            return False

    def delete_prefix(self, prefix: str) -> int:
        try:
            keys = list(self._client.scan_iter(match=prefix + "*"))
            if keys:
                self._client.delete(*keys)
            return len(keys)
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Redis invalidation failed: {e}")
            return 0


class MemcachedBackend(CacheBackend):
    """Memcached has no key listing, so invalidation flushes the server."""

    name = "memcached"

    def __init__(self, client: MemcacheClient) -> None:
        self._client = client

    def get(self, key: str) -> bytes | None:
        try:
            return self._client.get(key)
        except (MemcacheError, OSError) as e:
            logger.warning(f"Memcached get failed for {key}: {e}")
            return None

    def set(self, key: str, value: bytes, ttl: int) -> bool:
        try:
            return bool(self._client.set(key, value, expire=ttl, noreply=False))
        except (MemcacheError, OSError) as e:
            logger.warning(f"Memcached set failed for {key}: {e}")
            return False

    def delete_prefix(self, prefix: str) -> int:
        try:
            self._client.flush_all(noreply=False)
        except (MemcacheError, OSError) as e:
            logger.warning(f"Memcached flush failed: {e}")
        return 0


CacheProbe = Callable[[], "CacheBackend | None"]


def redis_probe(host: str, port: int, timeout: float) -> CacheProbe:
    def probe() -> CacheBackend | None:
        try:
            client = redis.Redis(
                host=host,
                port=port,
                socket_connect_timeout=timeout,
                socket_timeout=timeout,
            )
            client.ping()
            return RedisBackend(client)
        except (redis.RedisError, OSError) as e:
            logger.debug(f"Redis probe {host}:{port} failed: {e}")
            return None

    return probe


def memcached_probe(host: str, port: int, timeout: float) -> CacheProbe:
    def probe() -> CacheBackend | None:
        try:
            client = MemcacheClient((host, port), connect_timeout=timeout, timeout=timeout)
            client.version()
            return MemcachedBackend(client)
        except (MemcacheError, OSError) as e:
            logger.debug(f"Memcached probe {host}:{port} failed: {e}")
            return None

    return probe


def default_probes(settings: "Settings") -> list[CacheProbe]:
    return [
        redis_probe(settings.redis_host, settings.redis_port, settings.cache_probe_timeout),
        memcached_probe(settings.memcached_host, settings.memcached_port, settings.cache_probe_timeout),
    ]


class CacheManager:
    """Stores generated documents under CACHE_PREFIX. Thread-safe.

    The backend is chosen lazily and kept until the object-cache opt-in
    changes. Callers own the miss-then-rebuild sequence.
    """

    def __init__(
        self,
        db: "DB",
        config: "FeedConfig",
        probes: list[CacheProbe] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._durable = DurableBackend(db, clock=clock)
        self._probes = probes or []
        self._config = config
        self._backend: CacheBackend | None = None
        self._used: dict[str, CacheBackend] = {}
        self._lock = threading.Lock()

    @property
    def backend(self) -> CacheBackend:
        with self._lock:
            if self._backend is None:
                self._backend = self._detect_backend()
                self._used[self._backend.name] = self._backend
                logger.info(f"Sitemap cache backend: {self._backend.name}")
            return self._backend

    def _detect_backend(self) -> CacheBackend:
        if not self._config.enable_object_cache:
            return self._durable
        for probe in self._probes:
            try:
                backend = probe()
            except Exception:
                logger.exception("Cache probe raised unexpectedly")
                backend = None
            if backend is not None:
                return backend
        logger.warning("No external cache reachable, using durable store")
        return self._durable

    def configure(self, config: "FeedConfig") -> None:
        """Apply new configuration; re-detect the backend if the opt-in changed."""
        with self._lock:
            changed = config.enable_object_cache != self._config.enable_object_cache
            self._config = config
            if changed:
                self._backend = None

    def get(self, key: str) -> bytes | None:
        return self.backend.get(CACHE_PREFIX + key)

    def set(self, key: str, value: bytes, ttl: int | None = None) -> bool:
        ttl = ttl if ttl is not None else self._config.cache_duration
        return self.backend.set(CACHE_PREFIX + key, value, ttl)

    def invalidate_all(self) -> int:
        """Remove every sitemap entry from all backends used by this process."""
        active = self.backend
        with self._lock:
            backends = dict(self._used)
        backends[active.name] = active
        backends[self._durable.name] = self._durable

        removed = 0
        for backend in backends.values():
            removed += backend.delete_prefix(CACHE_PREFIX)
        logger.info(f"Sitemap cache invalidated ({removed} entries, backends={sorted(backends)})")
        return removed
