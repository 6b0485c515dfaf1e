"""Manifest discovery over HTTPS.

ManifestFetcher retrieves a host's manifest from the well-known location,
validates it and caches it for the freshness lifetime the server declares.

- Only https is accepted; a plain-http origin or a redirect to http raises
  InsecureTransportError and is never retried.
- Stale entries carrying an ETag/Last-Modified are revalidated with a
  conditional request; ``304 Not Modified`` returns the cached manifest.
- A 404 at the well-known path falls back to a ``Link: <url>;
  rel="agent-manifest"`` header on the site root before giving up.
- Connect errors, timeouts and 5xx responses are retried with capped
  exponential backoff.
"""

from __future__ import annotations

import asyncio
import time
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urljoin, urlsplit

import httpx

from atp.config import RetryConfig
from atp.discovery.cache import ManifestCache
from atp.discovery.validator import ManifestValidator
from atp.errors import (
    DiscoveryNetworkError,
    InsecureTransportError,
    ManifestNotFoundError,
    ManifestValidationError,
    ValidationErrorKind,
    ValidationIssue,
)
from atp.models.constants import (
    DEFAULT_DISCOVERY_ATTEMPTS,
    DEFAULT_TIMEOUT,
    FORWARD_POINTER_REL,
    USER_AGENT,
    WELL_KNOWN_MANIFEST_PATH,
)
from atp.models.manifest import Manifest
from atp.observability import get_logger, get_metrics
from atp.transport.retry import calculate_backoff, is_retryable_status

logger = get_logger(__name__)

MAX_REDIRECTS = 5


def normalize_origin(host: str) -> tuple[str, str]:
    """Split a host argument into a cache key and an https origin.

    Accepts a bare host name (``shop.example.com``) or an https origin.

    Returns:
        ``(key, origin)``, e.g. ``("shop.example.com", "https://shop.example.com")``

    Raises:
        InsecureTransportError: If the host names a non-https scheme
        ValueError: If no host name can be extracted
    """
    candidate = host.strip()
    if "://" in candidate:
        parts = urlsplit(candidate)
        if parts.scheme.lower() != "https":
            raise InsecureTransportError(host=host, url=candidate)
        netloc = parts.netloc
    else:
        netloc = candidate.split("/", 1)[0]
    netloc = netloc.lower()
    if not netloc:
        raise ValueError(f"Cannot determine host name from '{host}'")
    return netloc, f"https://{netloc}"


def freshness_lifetime(
    headers: httpx.Headers, default_ttl: float, now: float | None = None
) -> Optional[float]:
    """Freshness lifetime in seconds declared by response headers.

    ``Cache-Control: max-age`` (less ``Age``) wins over ``Expires``; with
    neither, ``default_ttl`` applies. ``no-cache`` yields 0 (store, but
    revalidate every time).

    Returns:
        Seconds of freshness, or None when the response must not be stored
    """
    directives: dict[str, str | None] = {}
    for part in headers.get("Cache-Control", "").split(","):
        name, _, value = part.strip().partition("=")
        if name:
            directives[name.lower()] = value.strip('"') or None

    if "no-store" in directives:
        return None
    if "no-cache" in directives:
        return 0.0
    max_age = directives.get("max-age")
    if max_age is not None and max_age.isdigit():
        age = headers.get("Age", "0")
        return max(0.0, float(max_age) - (float(age) if age.isdigit() else 0.0))

    expires = headers.get("Expires")
    if expires:
        try:
            expires_at = parsedate_to_datetime(expires)
        except (TypeError, ValueError, IndexError):
            return 0.0
        current = time.time() if now is None else now
        return max(0.0, expires_at.timestamp() - current)
    return default_ttl


class ManifestFetcher:
    """Discovers, validates and caches host manifests.

    Example:
        >>> async with ManifestFetcher() as fetcher:
        ...     manifest = await fetcher.discover("shop.example.com")
        ...     print([c.id for c in manifest.capabilities])
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        validator: ManifestValidator | None = None,
        cache: ManifestCache | None = None,
        retry: RetryConfig | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the fetcher.

        Args:
            http_client: Shared client; one is created (and owned) when omitted
            validator: Manifest validator (default: ManifestValidator())
            cache: Manifest cache (default: ManifestCache())
            retry: Retry policy (default: 3 attempts)
            timeout: Default per-request timeout in seconds
            sleep: Awaitable used between retries (injectable for tests)
        """
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()
        self._validator = validator or ManifestValidator()
        self._cache = cache or ManifestCache()
        self._retry = retry or RetryConfig(max_attempts=DEFAULT_DISCOVERY_ATTEMPTS)
        self._timeout = timeout
        self._sleep = sleep

    async def __aenter__(self) -> ManifestFetcher:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def cache(self) -> ManifestCache:
        return self._cache

    def invalidate(self, host: str) -> None:
        """Drop the cached manifest for ``host``."""
        key, _ = normalize_origin(host)
        self._cache.invalidate(key)

    def clear(self) -> None:
        self._cache.clear_all()

    async def discover(self, host: str, *, timeout: float | None = None) -> Manifest:
        """Return the validated manifest for ``host``.

        Args:
            host: Bare host name or https origin
            timeout: Per-request timeout override in seconds

        Raises:
            InsecureTransportError: Non-https origin or redirect
            ManifestNotFoundError: No manifest at the well-known path or forward pointer
            DiscoveryNetworkError: Transient failures persisted across all attempts
            ManifestValidationError: The document is not a valid manifest
        """
        key, origin = normalize_origin(host)
        metrics = get_metrics()

        cached = self._cache.get_fresh(key)
        if cached is not None:
            metrics.increment_counter("atp_discovery_fetch_total", {"result": "cached"})
            return cached

        entry = self._cache.get_entry(key)
        url = entry.url if entry is not None else origin + WELL_KNOWN_MANIFEST_PATH
        headers: dict[str, str] = {}
        if entry is not None:
            if entry.etag:
                headers["If-None-Match"] = entry.etag
            if entry.last_modified:
                headers["If-Modified-Since"] = entry.last_modified

        response = await self._get(key, url, headers, timeout)

        if response.status_code == 304 and entry is not None:
            ttl = freshness_lifetime(response.headers, self._cache.default_ttl)
            manifest = self._cache.renew(key, ttl or 0.0)
            if manifest is not None:
                metrics.increment_counter("atp_discovery_fetch_total", {"result": "not_modified"})
                logger.debug("atp.discovery.not_modified", host=key, url=url)
                return manifest

        if response.status_code in (404, 410):
            self._cache.invalidate(key)
            pointer = await self._find_forward_pointer(key, origin, timeout)
            if pointer is None or pointer == url:
                metrics.increment_counter("atp_discovery_fetch_total", {"result": "not_found"})
                raise ManifestNotFoundError(host=key, url=url)
            logger.info("atp.discovery.forward_pointer", host=key, url=pointer)
            url = pointer
            response = await self._get(key, url, {}, timeout)
            if response.status_code in (404, 410):
                metrics.increment_counter("atp_discovery_fetch_total", {"result": "not_found"})
                raise ManifestNotFoundError(host=key, url=url)

        if not response.is_success:
            metrics.increment_counter("atp_discovery_fetch_total", {"result": "error"})
            raise DiscoveryNetworkError(
                host=key, reason=f"HTTP {response.status_code} from {url}", attempts=1
            )

        try:
            document = response.json()
        except ValueError as e:
            metrics.increment_counter("atp_discovery_fetch_total", {"result": "invalid"})
            raise ManifestValidationError(
                [
                    ValidationIssue(
                        kind=ValidationErrorKind.SCHEMA_VIOLATION,
                        path="$",
                        message=f"manifest body is not valid JSON: {e}",
                    )
                ]
            ) from e

        try:
            manifest = self._validator.validate(document)
        except ManifestValidationError:
            metrics.increment_counter("atp_discovery_fetch_total", {"result": "invalid"})
            raise

        ttl = freshness_lifetime(response.headers, self._cache.default_ttl)
        if ttl is not None:
            self._cache.set(
                key,
                manifest,
                url=str(response.url),
                ttl=ttl,
                etag=response.headers.get("ETag"),
                last_modified=response.headers.get("Last-Modified"),
            )
        metrics.increment_counter("atp_discovery_fetch_total", {"result": "fetched"})
        logger.info(
            "atp.discovery.fetched",
            host=key,
            url=str(response.url),
            capabilities=len(manifest.capabilities),
            ttl=ttl,
        )
        return manifest

    async def _find_forward_pointer(
        self, key: str, origin: str, timeout: float | None
    ) -> str | None:
        """Look for a ``rel="agent-manifest"`` Link header on the site root."""
        try:
            response = await self._get(key, origin + "/", {}, timeout)
        except DiscoveryNetworkError as e:
            logger.debug("atp.discovery.forward_pointer_unavailable", host=key, reason=e.reason)
            return None
        link = response.links.get(FORWARD_POINTER_REL)
        if not link or not link.get("url"):
            return None
        pointer = urljoin(origin + "/", link["url"])
        if urlsplit(pointer).scheme.lower() != "https":
            raise InsecureTransportError(host=key, url=pointer)
        return pointer

    async def _get(
        self,
        key: str,
        url: str,
        headers: dict[str, str],
        timeout: float | None,
    ) -> httpx.Response:
        """GET with https-only redirects and bounded retries."""
        request_headers = {"Accept": "application/json", "User-Agent": USER_AGENT, **headers}
        max_attempts = self._retry.max_attempts
        reason = ""
        for attempt in range(max_attempts):
            try:
                response = await self._send(key, url, request_headers, timeout)
            except httpx.TransportError as e:
                reason = f"{type(e).__name__}: {e}"
            else:
                if not is_retryable_status(response.status_code):
                    return response
                reason = f"HTTP {response.status_code}"
            if attempt < max_attempts - 1:
                delay = calculate_backoff(attempt, self._retry)
                logger.warning(
                    "atp.discovery.retry",
                    host=key,
                    url=url,
                    reason=reason,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    delay_seconds=round(delay, 2),
                )
                await self._sleep(delay)
        get_metrics().increment_counter("atp_discovery_fetch_total", {"result": "error"})
        raise DiscoveryNetworkError(host=key, reason=reason, attempts=max_attempts)

    async def _send(
        self,
        key: str,
        url: str,
        headers: dict[str, str],
        timeout: float | None,
    ) -> httpx.Response:
        current = url
        for _ in range(MAX_REDIRECTS + 1):
            if urlsplit(current).scheme.lower() != "https":
                raise InsecureTransportError(host=key, url=current)
            response = await self._client.get(
                current,
                headers=headers,
                timeout=timeout or self._timeout,
                follow_redirects=False,
            )
            location = response.headers.get("Location")
            if not response.is_redirect or not location:
                return response
            current = urljoin(current, location)
        raise DiscoveryNetworkError(host=key, reason="too many redirects", attempts=1)
