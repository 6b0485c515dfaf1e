"""Observability for the ATP runtime.

Structured logging (structlog) and in-process metrics.

Example:
    >>> from atp.observability import get_logger, get_metrics
    >>> logger = get_logger(__name__)
    >>> logger.info("atp.discovery.fetched", host="shop.example.com")
    >>> get_metrics().increment_counter("atp_discovery_fetch_total", {"result": "fetched"})
"""

from atp.observability.logging import (
    bind_context,
    unbind_context,
    configure_logging,
    get_logger,
    is_debug_mode,
    sanitize_for_logging,
)
from atp.observability.metrics import MetricsCollector, get_metrics, reset_metrics

__all__ = [
    "bind_context",
    "unbind_context",
    "configure_logging",
    "get_logger",
    "get_metrics",
    "is_debug_mode",
    "reset_metrics",
    "MetricsCollector",
    "sanitize_for_logging",
]
