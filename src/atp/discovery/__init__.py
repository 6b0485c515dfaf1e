"""Manifest discovery: fetching, caching and validation."""

from atp.discovery.cache import ManifestCache
from atp.discovery.fetcher import ManifestFetcher, freshness_lifetime, normalize_origin
from atp.discovery.validator import ManifestValidator

__all__ = [
    "ManifestCache",
    "ManifestFetcher",
    "ManifestValidator",
    "freshness_lifetime",
    "normalize_origin",
]
