"""Notification targets: search engine ping and URL submission endpoints.

Every target reports a PingOutcome; transport errors are classified and
returned, never raised. A target without usable credentials reports
is_configured() == False and is skipped by the caller.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import quote, urlparse

import httpx
from google.auth import crypt, jwt

if TYPE_CHECKING:
    from newsdesk.core.config import ConfigProvider, FeedConfig

logger = logging.getLogger(__name__)

GOOGLE_PING_URL = "https://www.google.com/ping"
BING_PING_URL = "https://www.bing.com/ping"
INDEXNOW_URL = "https://api.indexnow.org/indexnow"
BING_SUBMIT_URL = "https://ssl.bing.com/webmaster/api.svc/json/SubmitUrlBatch"
SEARCH_CONSOLE_SITEMAPS_URL = "https://www.googleapis.com/webmasters/v3/sites/{site}/sitemaps/{feedpath}"
SEARCH_CONSOLE_SCOPE = "https://www.googleapis.com/auth/webmasters"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

PING_TIMEOUT = 10.0
SUBMIT_TIMEOUT = 30.0

INDEXNOW_BATCH_LIMIT = 10000
INDEXNOW_KEY_RE = re.compile(r"^[a-f0-9]{32}$")
BING_API_KEY_RE = re.compile(r"^[A-Za-z0-9]{16,64}$")

MAX_MESSAGE_LENGTH = 500

# Lifetime of the signed assertion exchanged for an access token
ASSERTION_LIFETIME = 3600


@dataclass
class PingOutcome:
    """Result of one delivery attempt to one target."""

    target: str
    success: bool
    status_code: int = 0
    message: str = ""
    url_count: int = 0

    @property
    def retriable(self) -> bool:
        return not self.success


def _outcome_from_response(target: str, response: httpx.Response, url_count: int) -> PingOutcome:
    success = 200 <= response.status_code < 300
    message = response.reason_phrase or ""
    if not success and response.text:
        message = f"{message}: {response.text.strip()}"
    return PingOutcome(
        target=target,
        success=success,
        status_code=response.status_code,
        message=message[:MAX_MESSAGE_LENGTH],
        url_count=url_count,
    )


def _outcome_from_error(target: str, error: Exception, url_count: int) -> PingOutcome:
    if isinstance(error, httpx.TimeoutException):
        message = "Request timed out"
    elif isinstance(error, httpx.ConnectError):
        message = f"Connection error: {error}"
    else:
        message = f"{type(error).__name__}: {error}"
    logger.warning(f"{target} delivery failed: {message}")
    return PingOutcome(target=target, success=False, status_code=0, message=message[:MAX_MESSAGE_LENGTH], url_count=url_count)


class NotificationTarget(ABC):
    """One external endpoint to notify about new or changed content."""

    name: str = "abstract"

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    async def submit(self, client: httpx.AsyncClient, urls: list[str], sitemap_url: str) -> PingOutcome:
        """Deliver one notification for the given content URLs.

        Args:
            client: Shared HTTP client for the burst.
            urls: Canonical URLs of the changed items (empty for feed-level pings).
            sitemap_url: Public URL of the news sitemap.
        """
        ...


class TraditionalPingTarget(NotificationTarget):
    """GET <endpoint>?sitemap=<sitemap url>."""

    def __init__(self, name: str, endpoint: str, enabled: bool = True) -> None:
        self.name = name
        self._endpoint = endpoint
        self._enabled = enabled

    def is_configured(self) -> bool:
        return self._enabled

    async def submit(self, client: httpx.AsyncClient, urls: list[str], sitemap_url: str) -> PingOutcome:
        try:
            response = await client.get(self._endpoint, params={"sitemap": sitemap_url}, timeout=PING_TIMEOUT)
        except httpx.HTTPError as e:
            return _outcome_from_error(self.name, e, len(urls))
        return _outcome_from_response(self.name, response, len(urls))


def generate_indexnow_key() -> str:
    return secrets.token_hex(16)


class IndexNowKeyStore:
    """Owns the IndexNow key and its `<key>.txt` verification file.

    The file is (re)written before the first submission under a key and
    whenever the key changes; the previous key's file is removed.
    """

    def __init__(self, provider: "ConfigProvider", verification_dir: str | Path) -> None:
        self._provider = provider
        self._dir = Path(verification_dir)
        self._verified_key: str | None = None
        self._lock = threading.Lock()

    def current_key(self) -> str:
        return str(self._provider.get("indexnow_key", "") or "").strip()

    def verification_path(self, key: str) -> Path:
        return self._dir / f"{key}.txt"

    def ensure_key(self) -> str:
        """Return a valid key, generating and persisting one if needed."""
        with self._lock:
            key = self.current_key()
            if not INDEXNOW_KEY_RE.match(key):
                if key:
                    logger.warning("Configured IndexNow key is malformed, generating a new one")
                key = generate_indexnow_key()
                self._provider.set("indexnow_key", key)
            self._write_verification(key)
            return key

    def ensure_verification(self, key: str) -> None:
        with self._lock:
            if self._verified_key != key or not self.verification_path(key).exists():
                self._write_verification(key)

    def regenerate(self) -> str:
        with self._lock:
            old = self.current_key()
            key = generate_indexnow_key()
            self._provider.set("indexnow_key", key)
            if old and INDEXNOW_KEY_RE.match(old):
                self.verification_path(old).unlink(missing_ok=True)
            self._write_verification(key)
            logger.info("IndexNow key regenerated")
            return key

    def verification_body(self, key: str) -> str | None:
        """Contents of `<key>.txt` if `key` is the active key, else None."""
        current = self.current_key()
        if INDEXNOW_KEY_RE.match(key) and key == current:
            return current
        return None

    def _write_verification(self, key: str) -> None:
        if self._verified_key and self._verified_key != key:
            self.verification_path(self._verified_key).unlink(missing_ok=True)
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self.verification_path(key)
        if not path.exists() or path.read_text() != key:
            path.write_text(key)
            logger.info(f"Wrote IndexNow verification file {path}")
        self._verified_key = key


class IndexNowTarget(NotificationTarget):
    """POST {host, key, urlList} to the IndexNow endpoint, in batches."""

    name = "indexnow"

    def __init__(self, key_store: IndexNowKeyStore, site_url: str, enabled: bool = True) -> None:
        self._keys = key_store
        self._host = urlparse(site_url).hostname or ""
        self._enabled = enabled

    def is_configured(self) -> bool:
        return self._enabled and bool(self._host) and bool(INDEXNOW_KEY_RE.match(self._keys.current_key()))

    async def submit(self, client: httpx.AsyncClient, urls: list[str], sitemap_url: str) -> PingOutcome:
        urls = urls or [sitemap_url]
        key = self._keys.current_key()
        try:
            self._keys.ensure_verification(key)
        except OSError as e:
            logger.warning(f"IndexNow verification file not writable: {e}")
            return PingOutcome(
                target=self.name,
                success=False,
                message=f"Verification file not writable: {e}"[:MAX_MESSAGE_LENGTH],
                url_count=len(urls),
            )

        outcome = PingOutcome(target=self.name, success=True, status_code=200, url_count=0)
        for start in range(0, len(urls), INDEXNOW_BATCH_LIMIT):
            batch = urls[start : start + INDEXNOW_BATCH_LIMIT]
            body = {"host": self._host, "key": key, "urlList": batch}
            try:
                response = await client.post(
                    INDEXNOW_URL,
                    json=body,
                    headers={"Content-Type": "application/json; charset=utf-8"},
                    timeout=SUBMIT_TIMEOUT,
                )
            except httpx.HTTPError as e:
                return _outcome_from_error(self.name, e, len(urls))
            outcome = _outcome_from_response(self.name, response, len(urls))
            if not outcome.success:
                return outcome
        return outcome


class BingSubmissionTarget(NotificationTarget):
    """Bing Webmaster URL submission API, authenticated by API key."""

    name = "bing_api"

    def __init__(self, api_key: str, site_url: str) -> None:
        self._api_key = (api_key or "").strip()
        self._site_url = site_url.rstrip("/")

    def is_configured(self) -> bool:
        return bool(BING_API_KEY_RE.match(self._api_key))

    async def submit(self, client: httpx.AsyncClient, urls: list[str], sitemap_url: str) -> PingOutcome:
        urls = urls or [sitemap_url]
        try:
            response = await client.post(
                BING_SUBMIT_URL,
                json={"siteUrl": self._site_url, "urlList": urls},
                headers={"apikey": self._api_key},
                timeout=SUBMIT_TIMEOUT,
            )
        except httpx.HTTPError as e:
            return _outcome_from_error(self.name, e, len(urls))
        return _outcome_from_response(self.name, response, len(urls))


def load_service_account(credentials_json: str | dict | None) -> dict | None:
    """Parse service-account credentials; None when absent or unusable."""
    if not credentials_json:
        return None
    if isinstance(credentials_json, dict):
        info = credentials_json
    else:
        try:
            info = json.loads(credentials_json)
        except ValueError:
            logger.warning("Search Console credentials are not valid JSON")
            return None
    if not isinstance(info, dict) or info.get("type") != "service_account":
        logger.warning("Search Console credentials are not a service account")
        return None
    if not info.get("client_email") or not info.get("private_key"):
        logger.warning("Search Console credentials lack client_email or private_key")
        return None
    return info


class SearchConsoleTarget(NotificationTarget):
    """Search Console sitemaps API, authenticated as a service account.

    A signed assertion is exchanged for an access token, then the sitemap
    URL is submitted for the site. Content URLs are not sent individually.
    """

    name = "search_console"

    def __init__(
        self,
        credentials_json: str | dict | None,
        site_url: str,
        signer_factory=crypt.RSASigner.from_service_account_info,
        clock=time.time,
    ) -> None:
        self._site_url = site_url.rstrip("/") + "/"
        self._clock = clock
        self._info = load_service_account(credentials_json)
        self._signer = None
        if self._info is not None:
            try:
                self._signer = signer_factory(self._info)
            except (ValueError, TypeError, KeyError) as e:
                logger.warning(f"Search Console private key unusable: {e}")

    def is_configured(self) -> bool:
        return self._signer is not None

    def _assertion(self) -> str:
        issued = int(self._clock())
        payload = {
            "iss": self._info["client_email"],
            "scope": SEARCH_CONSOLE_SCOPE,
            "aud": self._info.get("token_uri") or GOOGLE_TOKEN_URL,
            "iat": issued,
            "exp": issued + ASSERTION_LIFETIME,
        }
        return jwt.encode(self._signer, payload).decode("ascii")

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        response = await client.post(
            self._info.get("token_uri") or GOOGLE_TOKEN_URL,
            data={
                "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                "assertion": self._assertion(),
            },
            timeout=SUBMIT_TIMEOUT,
        )
        response.raise_for_status()
        return response.json()["access_token"]

    async def submit(self, client: httpx.AsyncClient, urls: list[str], sitemap_url: str) -> PingOutcome:
        try:
            token = await self._access_token(client)
        except httpx.HTTPStatusError as e:
            logger.warning(f"Search Console token request rejected: {e.response.status_code}")
            return _outcome_from_response(self.name, e.response, len(urls))
        except httpx.HTTPError as e:
            return _outcome_from_error(self.name, e, len(urls))
        except (ValueError, KeyError) as e:
            return PingOutcome(target=self.name, success=False, message=f"Malformed token response: {e}", url_count=len(urls))

        endpoint = SEARCH_CONSOLE_SITEMAPS_URL.format(
            site=quote(self._site_url, safe=""),
            feedpath=quote(sitemap_url, safe=""),
        )
        try:
            response = await client.put(endpoint, headers={"Authorization": f"Bearer {token}"}, timeout=SUBMIT_TIMEOUT)
        except httpx.HTTPError as e:
            return _outcome_from_error(self.name, e, len(urls))
        return _outcome_from_response(self.name, response, len(urls))


def build_targets(config: "FeedConfig", key_store: IndexNowKeyStore, site_url: str) -> list[NotificationTarget]:
    """All targets in dispatch order; callers filter on is_configured()."""
    return [
        TraditionalPingTarget("google", GOOGLE_PING_URL, enabled=config.ping_google),
        TraditionalPingTarget("bing", BING_PING_URL, enabled=config.ping_bing),
        IndexNowTarget(key_store, site_url, enabled=config.indexnow_enabled),
        BingSubmissionTarget(config.bing_api_key, site_url),
        SearchConsoleTarget(config.gsc_credentials_json, site_url),
    ]
