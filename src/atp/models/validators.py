"""Shared field validators for ATP models."""

import re

from atp.models.constants import SEMVER_PATTERN

_SEMVER_RE = re.compile(SEMVER_PATTERN)

_WINDOW_UNITS = {
    "s": 1.0,
    "second": 1.0,
    "m": 60.0,
    "minute": 60.0,
    "h": 3600.0,
    "hour": 3600.0,
    "d": 86400.0,
    "day": 86400.0,
}
_WINDOW_RE = re.compile(r"^(\d+(?:\.\d+)?)?\s*([a-z]+)$")


def validate_semver(v: str) -> str:
    """Validate a Semantic Versioning 2.0.0 string (e.g. '1.4.0-beta.1')."""
    if not _SEMVER_RE.match(v):
        raise ValueError(f"Invalid semantic version '{v}': expected MAJOR.MINOR.PATCH")
    return v


def parse_window_seconds(window: str | int | float) -> float:
    """Convert a rate-limit window to seconds.

    Accepts a number of seconds, a unit name ("minute") or a count plus
    unit ("15m", "1 hour").

    Example:
        >>> parse_window_seconds("minute")
        60.0
        >>> parse_window_seconds("15m")
        900.0
        >>> parse_window_seconds(10)
        10.0
    """
    if isinstance(window, bool):
        raise ValueError("Rate-limit window must be a number of seconds or a unit string")
    if isinstance(window, (int, float)):
        seconds = float(window)
    else:
        match = _WINDOW_RE.match(window.strip().lower())
        if match is None:
            raise ValueError(f"Invalid rate-limit window '{window}'")
        count, unit = match.groups()
        if len(unit) > 2 and unit.endswith("s"):
            unit = unit[:-1]
        if unit not in _WINDOW_UNITS:
            raise ValueError(f"Unknown rate-limit window unit '{unit}' in '{window}'")
        seconds = float(count or 1) * _WINDOW_UNITS[unit]
    if seconds <= 0:
        raise ValueError(f"Rate-limit window must be positive, got '{window}'")
    return seconds
