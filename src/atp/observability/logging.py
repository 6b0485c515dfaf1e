"""Structured logging for the ATP runtime.

structlog is configured once per process with either a colored console
renderer (development) or a JSON renderer (production). Events are named with
dotted identifiers (``atp.invoker.dispatch``) and carry keyword context.

Environment Variables:
    ATP_LOG_FORMAT: "json" or "console" (default)
    ATP_LOG_LEVEL: DEBUG, INFO, WARNING or ERROR (default INFO)
    ATP_SERVICE_NAME: Service name bound into every event
    ATP_DEBUG: "true"/"1" disables redaction of credentials in logged payloads

Example:
    >>> from atp.observability.logging import configure_logging, get_logger
    >>> configure_logging(log_format="json", log_level="INFO")
    >>> logger = get_logger("atp.transport.invoker")
    >>> logger.info("atp.invoker.dispatch", capability_id="search-products")
"""

import logging
import os
import sys
from typing import Any

import structlog
from structlog.typing import Processor

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FORMAT = "console"
DEFAULT_SERVICE_NAME = "atp-runtime"

ENV_LOG_FORMAT = "ATP_LOG_FORMAT"
ENV_LOG_LEVEL = "ATP_LOG_LEVEL"
ENV_SERVICE_NAME = "ATP_SERVICE_NAME"
ENV_DEBUG = "ATP_DEBUG"

REDACTED_PLACEHOLDER = "***REDACTED***"

# Key substrings (case-insensitive) whose values never reach a log line
_SENSITIVE_KEY_PATTERNS = frozenset(
    {"password", "token", "secret", "key", "authorization", "auth", "verifier", "cookie"}
)

_logging_configured = False


def _is_sensitive_key(key: str) -> bool:
    lower = key.lower()
    return any(pattern in lower for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_for_logging(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``data`` with credential-like values redacted.

    Nested dicts and lists of dicts are sanitized recursively. Redaction is
    skipped entirely when ATP_DEBUG is enabled.

    Example:
        >>> sanitize_for_logging({"q": "headphones", "api_key": "k-123"})
        {'q': 'headphones', 'api_key': '***REDACTED***'}
    """
    if not data:
        return {}
    if is_debug_mode():
        return dict(data)
    result: dict[str, Any] = {}
    for k, v in data.items():
        if _is_sensitive_key(k):
            result[k] = REDACTED_PLACEHOLDER
        elif isinstance(v, dict):
            result[k] = sanitize_for_logging(v)
        elif isinstance(v, list):
            result[k] = [
                sanitize_for_logging(item) if isinstance(item, dict) else item for item in v
            ]
        else:
            result[k] = v
    return result


def is_debug_mode() -> bool:
    """Return True if ATP_DEBUG is set to a truthy value."""
    value = os.environ.get(ENV_DEBUG, "").strip().lower()
    return value in ("true", "1", "yes", "on")


def _get_shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def configure_logging(
    log_format: str | None = None,
    log_level: str | None = None,
    service_name: str | None = None,
    force: bool = False,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_format: "json" or "console". Defaults to ATP_LOG_FORMAT or "console"
        log_level: Minimum level. Defaults to ATP_LOG_LEVEL or "INFO"
        service_name: Bound as ``service`` on every event
        force: Reconfigure even if already configured
    """
    global _logging_configured

    if _logging_configured and not force:
        return

    log_format = (log_format or os.environ.get(ENV_LOG_FORMAT, DEFAULT_LOG_FORMAT)).lower()
    log_level = (log_level or os.environ.get(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL)).upper()
    service_name = service_name or os.environ.get(ENV_SERVICE_NAME, DEFAULT_SERVICE_NAME)

    shared_processors = _get_shared_processors()

    if log_format == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=True,
            exception_formatter=structlog.dev.plain_traceback,
        )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))

    structlog.contextvars.bind_contextvars(service=service_name)

    _logging_configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger for ``name``, configuring defaults on first use."""
    if not _logging_configured:
        configure_logging()

    return structlog.stdlib.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context (e.g. host, workflow_id) onto every subsequent event."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove context bound with bind_context."""
    structlog.contextvars.unbind_contextvars(*keys)
