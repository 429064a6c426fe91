from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    site_url: str
    redis_host: str
    redis_port: int
    memcached_host: str
    memcached_port: int
    cache_probe_timeout: float
    verification_dir: str

    @staticmethod
    def from_env() -> "Settings":
        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "/app/_local/data/newsdesk.db").strip(),
            site_url=os.getenv("SITE_URL", "http://localhost:8000").strip().rstrip("/"),
            redis_host=os.getenv("REDIS_HOST", "127.0.0.1").strip(),
            redis_port=_i("REDIS_PORT", "6379"),
            memcached_host=os.getenv("MEMCACHED_HOST", "127.0.0.1").strip(),
            memcached_port=_i("MEMCACHED_PORT", "11211"),
            cache_probe_timeout=_f("CACHE_PROBE_TIMEOUT", "0.5"),
            verification_dir=os.getenv("VERIFICATION_DIR", "/app/_local/public").strip(),
        )
