"""Manifest caching keyed by host.

Entries keep the validated Manifest together with the HTTP cache validators
(ETag / Last-Modified) it was served with. An expired entry is not dropped
straight away: the fetcher revalidates it with a conditional request and a
``304 Not Modified`` renews its freshness.

The cache uses an OrderedDict with TTL expiration and LRU eviction when
max_size is reached.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from threading import Lock
from typing import Callable, Optional

from atp.models.constants import DEFAULT_MANIFEST_TTL
from atp.models.manifest import Manifest

DEFAULT_MAX_SIZE = 256


class CacheEntry:
    """Cached manifest with freshness metadata.

    Attributes:
        manifest: Validated manifest
        url: URL the manifest was fetched from
        etag: ETag validator, if the server sent one
        last_modified: Last-Modified validator, if the server sent one
        expires_at: Monotonic instant at which the entry becomes stale
    """

    def __init__(
        self,
        manifest: Manifest,
        url: str,
        ttl: float,
        now: float,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> None:
        self.manifest = manifest
        self.url = url
        self.etag = etag
        self.last_modified = last_modified
        self.expires_at = now + ttl

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    @property
    def has_validator(self) -> bool:
        return self.etag is not None or self.last_modified is not None

    def renew(self, ttl: float, now: float) -> None:
        self.expires_at = now + ttl


class ManifestCache:
    """Thread-safe LRU cache of manifests keyed by host.

    Example:
        >>> cache = ManifestCache(default_ttl=300.0)
        >>> cache.set("shop.example.com", manifest, url=url, etag='"v1"')
        >>> cache.get_fresh("shop.example.com") is manifest
        True
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_MANIFEST_TTL,
        max_size: int = DEFAULT_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = Lock()
        self._default_ttl = default_ttl
        self._max_size = max_size
        self._clock = clock

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    def get_fresh(self, host: str) -> Optional[Manifest]:
        """Return the cached manifest if it is still fresh."""
        with self._lock:
            entry = self._cache.get(host)
            if entry is None or entry.is_expired(self._clock()):
                return None
            self._cache.move_to_end(host)
            return entry.manifest

    def get_entry(self, host: str) -> Optional[CacheEntry]:
        """Return the entry for ``host`` whether fresh or stale.

        Stale entries without a validator cannot be revalidated and are
        evicted instead.
        """
        with self._lock:
            entry = self._cache.get(host)
            if entry is None:
                return None
            if entry.is_expired(self._clock()) and not entry.has_validator:
                del self._cache[host]
                return None
            self._cache.move_to_end(host)
            return entry

    def set(
        self,
        host: str,
        manifest: Manifest,
        *,
        url: str,
        ttl: Optional[float] = None,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> None:
        if ttl is None:
            ttl = self._default_ttl
        with self._lock:
            if host in self._cache:
                del self._cache[host]
            elif self._max_size > 0:
                while len(self._cache) >= self._max_size:
                    self._cache.popitem(last=False)
            self._cache[host] = CacheEntry(
                manifest, url, ttl, self._clock(), etag=etag, last_modified=last_modified
            )

    def renew(self, host: str, ttl: Optional[float] = None) -> Optional[Manifest]:
        """Mark a revalidated entry fresh again and return its manifest."""
        with self._lock:
            entry = self._cache.get(host)
            if entry is None:
                return None
            entry.renew(self._default_ttl if ttl is None else ttl, self._clock())
            self._cache.move_to_end(host)
            return entry.manifest

    def invalidate(self, host: str) -> None:
        with self._lock:
            self._cache.pop(host, None)

    def clear_all(self) -> None:
        with self._lock:
            self._cache.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._cache)
