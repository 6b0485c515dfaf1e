"""Backoff and Retry-After helpers shared by discovery and dispatch."""

from __future__ import annotations

import random
import time
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from atp.config import RetryConfig

# Failures where the request never reached the host; safe to retry for any method
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
)


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Calculate exponential backoff delay for a retry attempt.

    delay = min(base_delay * 2**attempt, max_delay) + jitter, where jitter
    is up to 10% of the capped delay.

    Args:
        attempt: Zero-based attempt number (0 = first retry)
        config: Retry policy

    Returns:
        Delay in seconds before the next attempt

    Example:
        >>> calculate_backoff(2, RetryConfig(base_delay=0.5, jitter=False))
        2.0
    """
    delay = config.base_delay * (2**attempt)
    delay = min(delay, config.max_delay)
    if config.jitter:
        delay += random.uniform(0, delay * 0.1)  # nosec B311
    return float(delay)


def parse_retry_after(value: str | None, now: float | None = None) -> float | None:
    """Parse a Retry-After value given as seconds or as an HTTP date.

    Args:
        value: Raw header value
        now: Current wall-clock time; defaults to ``time.time()``

    Returns:
        Seconds to wait, or None if the value is absent, malformed or in the past
    """
    if not value:
        return None
    value = value.strip()
    if value.replace(".", "", 1).isdigit():
        return float(value)
    try:
        retry_date = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_date is None:
        return None
    delay = retry_date.timestamp() - (time.time() if now is None else now)
    return delay if delay > 0 else None


def error_retry_after(error_body: dict[str, Any]) -> float | None:
    """Extract ``retryAfter`` from a structured ``{error: {...}}`` body."""
    value = error_body.get("retryAfter")
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def is_retryable_status(status_code: int) -> bool:
    return 500 <= status_code < 600
