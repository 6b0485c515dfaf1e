"""Capability dispatch: argument routing, rate budgets, retries and invocation."""

from atp.transport.arguments import (
    RoutedArguments,
    TypedValue,
    build_url,
    route_arguments,
    validate_arguments,
)
from atp.transport.invoker import (
    CapabilityInvoker,
    ConfirmationToken,
    InvocationResult,
    classify_error,
)
from atp.transport.rate_limit import RateDecision, RateLimiter
from atp.transport.retry import calculate_backoff, parse_retry_after

__all__ = [
    "CapabilityInvoker",
    "ConfirmationToken",
    "InvocationResult",
    "RateDecision",
    "RateLimiter",
    "RoutedArguments",
    "TypedValue",
    "build_url",
    "calculate_backoff",
    "classify_error",
    "parse_retry_after",
    "route_arguments",
    "validate_arguments",
]
