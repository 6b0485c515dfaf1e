"""ATP runtime: discover, authenticate against and invoke agent-facing hosts.

A host publishes a manifest at ``/.well-known/agent.json`` describing its
capabilities, auth schemes, rate limits, workflows and content policies.
This package fetches and validates that manifest, negotiates sessions,
enforces scopes, confirmation and rate budgets before any call, dispatches
capability invocations, runs workflows and records an audit trail.

Example:
    >>> from atp import ATPClient, Credentials
    >>> async with ATPClient() as client:
    ...     shop = await client.connect("shop.example.com")
    ...     await shop.authenticate("apiKey", Credentials(api_key="k"))
    ...     await shop.invoke("search-products", {"q": "headphones"})
"""

from atp.models.constants import RUNTIME_VERSION

__version__ = RUNTIME_VERSION

from atp.audit import AuditLog, InMemoryAuditLog, InvocationRecord, LoggingAuditLog  # noqa: E402
from atp.auth import AuthManager, Credentials, PendingAuthorization, Session  # noqa: E402
from atp.client import ATPClient, HostContext  # noqa: E402
from atp.config import RetryConfig, RuntimeConfig  # noqa: E402
from atp.discovery import ManifestFetcher, ManifestValidator  # noqa: E402
from atp.errors import ATPError  # noqa: E402
from atp.models import Manifest  # noqa: E402
from atp.transport import (  # noqa: E402
    CapabilityInvoker,
    ConfirmationToken,
    InvocationResult,
    RateLimiter,
)
from atp.workflow import WorkflowExecutor, WorkflowRun  # noqa: E402

__all__ = [
    "__version__",
    "ATPClient",
    "ATPError",
    "AuditLog",
    "AuthManager",
    "CapabilityInvoker",
    "ConfirmationToken",
    "Credentials",
    "HostContext",
    "InMemoryAuditLog",
    "InvocationRecord",
    "InvocationResult",
    "LoggingAuditLog",
    "Manifest",
    "ManifestFetcher",
    "ManifestValidator",
    "PendingAuthorization",
    "RateLimiter",
    "RetryConfig",
    "RuntimeConfig",
    "Session",
    "WorkflowExecutor",
    "WorkflowRun",
]
