"""Client-side request budgets per host.

Each host gets a token bucket seeded from its manifest's ``rateLimit``
declaration (capacity = ``burstLimit`` or ``requests``, refilled at
``requests / window`` tokens per second). The bucket is refined from
observed ``X-RateLimit-*`` / ``RateLimit-*`` headers, and a 429 blocks the
host until the server's ``Retry-After`` has elapsed, after which a fresh
window starts.

Accounting is guarded by a per-host ``threading.Lock``; the clock and the
sleep used by blocking acquisition are injectable for tests.

Example:
    >>> limiter = RateLimiter()
    >>> limiter.register("shop.example.com", RateLimitSpec(requests=60, window="minute"))
    >>> limiter.try_acquire("shop.example.com").granted
    True
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from atp.errors import RateLimitedError
from atp.models.constants import RATE_LIMIT_REMAINING_HEADERS, RATE_LIMIT_RESET_HEADERS
from atp.models.enums import RateLimitPolicy
from atp.models.manifest import RateLimitSpec
from atp.observability import get_logger, get_metrics

logger = get_logger(__name__)

DEFAULT_BLOCK_SECONDS = 1.0
# Reset header values above this are epoch timestamps rather than deltas
EPOCH_THRESHOLD = 1_000_000_000


@dataclass(frozen=True)
class RateDecision:
    """Outcome of an admission check."""

    granted: bool
    retry_after: float = 0.0


class HostRateLimitState:
    """Mutable budget for one host.

    Attributes:
        host: Host name
        limit: Declared requests per window (None when undeclared)
        window: Window length in seconds
        burst: Optional burst ceiling
        tokens: Tokens currently available
        window_start: Start of the current accounting window
        consumed: Requests admitted in the current window
        blocked_until: Instant before which nothing is admitted (server-imposed)
    """

    def __init__(self, host: str, spec: Optional[RateLimitSpec], now: float) -> None:
        self.host = host
        self.lock = threading.Lock()
        self.limit: Optional[int] = spec.requests if spec else None
        self.window: float = spec.window_seconds if spec else 0.0
        self.burst: Optional[int] = spec.burst_limit if spec else None
        self.capacity: float = float(self.burst or self.limit or 0)
        self.rate: float = (self.limit / self.window) if spec else 0.0
        self.tokens: float = self.capacity
        self.last_refill = now
        self.window_start = now
        self.consumed = 0
        self.blocked_until: Optional[float] = None

    @property
    def bounded(self) -> bool:
        return self.limit is not None

    def reset_window(self, now: float) -> None:
        self.tokens = self.capacity
        self.last_refill = now
        self.window_start = now
        self.consumed = 0

    def refill(self, now: float) -> None:
        if self.bounded:
            elapsed = max(0.0, now - self.last_refill)
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now
        if self.window and now - self.window_start >= self.window:
            self.window_start = now
            self.consumed = 0

    def seconds_until_available(self) -> float:
        if self.tokens >= 1 or not self.rate:
            return 0.0
        return (1.0 - self.tokens) / self.rate


class RateLimiter:
    """Per-host token buckets shared by every invoker in a process.

    State is kept per host and never global: two limiters never share budget.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._wall_clock = wall_clock
        self._states: dict[str, HostRateLimitState] = {}
        self._registry_lock = threading.Lock()

    def register(self, host: str, spec: Optional[RateLimitSpec]) -> HostRateLimitState:
        """Seed (or reseed) the bucket for ``host`` from its manifest declaration."""
        with self._registry_lock:
            existing = self._states.get(host)
            state = HostRateLimitState(host, spec, self._clock())
            if existing is not None:
                state.blocked_until = existing.blocked_until
            self._states[host] = state
            return state

    def state(self, host: str) -> HostRateLimitState:
        with self._registry_lock:
            state = self._states.get(host)
            if state is None:
                state = HostRateLimitState(host, None, self._clock())
                self._states[host] = state
            return state

    def try_acquire(self, host: str) -> RateDecision:
        """Consume one token if available."""
        state = self.state(host)
        with state.lock:
            now = self._clock()
            if state.blocked_until is not None:
                if now < state.blocked_until:
                    return self._deny(host, state.blocked_until - now)
                state.blocked_until = None
                state.reset_window(now)
            state.refill(now)
            if not state.bounded:
                state.consumed += 1
                return RateDecision(granted=True)
            if state.tokens >= 1:
                state.tokens -= 1
                state.consumed += 1
                return RateDecision(granted=True)
            return self._deny(host, state.seconds_until_available())

    def _deny(self, host: str, retry_after: float) -> RateDecision:
        get_metrics().increment_counter("atp_rate_limited_total", {"host": host})
        return RateDecision(granted=False, retry_after=retry_after)

    async def acquire(
        self, host: str, policy: RateLimitPolicy = RateLimitPolicy.FAIL
    ) -> None:
        """Wait for (BLOCK) or demand (FAIL) one token.

        Raises:
            RateLimitedError: Budget exhausted under the FAIL policy
        """
        while True:
            decision = self.try_acquire(host)
            if decision.granted:
                return
            if policy is RateLimitPolicy.FAIL:
                raise RateLimitedError(host=host, retry_after=decision.retry_after)
            logger.debug(
                "atp.rate_limit.waiting",
                host=host,
                delay_seconds=round(decision.retry_after, 3),
            )
            await self._sleep(decision.retry_after)

    def refund(self, host: str) -> None:
        """Return a token consumed by a request that was never sent."""
        state = self.state(host)
        with state.lock:
            if state.bounded:
                state.tokens = min(state.capacity, state.tokens + 1)
            state.consumed = max(0, state.consumed - 1)

    def observe_headers(self, host: str, headers: Mapping[str, str]) -> None:
        """Refine the bucket from server-reported remaining budget and reset time."""
        remaining = _first_number(headers, RATE_LIMIT_REMAINING_HEADERS)
        reset = _first_number(headers, RATE_LIMIT_RESET_HEADERS)
        if remaining is None:
            return
        state = self.state(host)
        with state.lock:
            now = self._clock()
            if remaining <= 0:
                delay = DEFAULT_BLOCK_SECONDS
                if reset is not None:
                    delay = reset - self._wall_clock() if reset > EPOCH_THRESHOLD else reset
                self._block(state, now, max(delay, 0.0))
            elif state.bounded:
                state.tokens = min(state.tokens, remaining)

    def on_rate_limited(self, host: str, retry_after: Optional[float]) -> float:
        """Block ``host`` after a 429, aligning the next window to ``retry_after``.

        Returns:
            The enforced wait in seconds
        """
        state = self.state(host)
        with state.lock:
            now = self._clock()
            delay = retry_after if retry_after is not None and retry_after > 0 else None
            if delay is None:
                delay = state.window or DEFAULT_BLOCK_SECONDS
            self._block(state, now, delay)
        logger.warning("atp.rate_limit.server_backpressure", host=host, retry_after=delay)
        return delay

    @staticmethod
    def _block(state: HostRateLimitState, now: float, delay: float) -> None:
        until = now + delay
        if state.blocked_until is None or until > state.blocked_until:
            state.blocked_until = until
        state.tokens = 0.0


def _first_number(headers: Mapping[str, str], names: tuple[str, ...]) -> Optional[float]:
    for name in names:
        value = headers.get(name)
        if value is None:
            continue
        try:
            return float(value.strip())
        except ValueError:
            continue
    return None
