"""Agent-side entry point.

ATPClient owns one ``httpx.AsyncClient``, a ManifestFetcher, a RateLimiter
shared across hosts (budgets stay per host), an AuditLog and a registry of
HostContexts. ``connect(host)`` discovers and validates the host's manifest
and returns a HostContext wiring an AuthManager, a CapabilityInvoker and a
WorkflowExecutor for it.

Example:
    >>> async with ATPClient(RuntimeConfig(agent_name="shopper")) as client:
    ...     shop = await client.connect("shop.example.com")
    ...     await shop.authenticate(
    ...         "oauth2-clientCredentials",
    ...         Credentials(client_id="shopper", client_secret="s3cret"),
    ...     )
    ...     result = await shop.invoke("search-products", {"q": "wireless headphones"})
    ...     print(result.body["products"])
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from atp.audit import AuditLog, InMemoryAuditLog
from atp.auth.manager import AuthManager, Credentials
from atp.auth.oauth2 import PendingAuthorization
from atp.auth.session import Session
from atp.config import RuntimeConfig
from atp.discovery.cache import ManifestCache
from atp.discovery.fetcher import ManifestFetcher, normalize_origin
from atp.discovery.validator import ManifestValidator
from atp.errors import AuthUnauthorizedError
from atp.models.enums import AuthSchemeKind, RateLimitPolicy
from atp.models.manifest import Capability, Manifest
from atp.models.types import Scope
from atp.observability import get_logger
from atp.transport.invoker import CapabilityInvoker, ConfirmationToken, InvocationResult
from atp.transport.rate_limit import RateLimiter
from atp.workflow.executor import ConfirmCallback, WorkflowExecutor, WorkflowRun

logger = get_logger(__name__)


class HostContext:
    """Everything needed to act on one host.

    Attributes:
        host: Host key (lowercased host[:port])
        origin: https origin requests are sent to
        manifest: Validated manifest
        auth: AuthManager for this host
        invoker: CapabilityInvoker for this host
        workflows: WorkflowExecutor for this host
        session: Session set by authenticate()/complete_authorization()
    """

    def __init__(
        self,
        host: str,
        origin: str,
        manifest: Manifest,
        auth: AuthManager,
        invoker: CapabilityInvoker,
    ) -> None:
        self.host = host
        self.origin = origin
        self.manifest = manifest
        self.auth = auth
        self.invoker = invoker
        self.workflows = WorkflowExecutor(manifest, invoker)
        self.session: Optional[Session] = None

    @property
    def capabilities(self) -> list[Capability]:
        return list(self.manifest.capabilities)

    def capability(self, capability_id: str) -> Optional[Capability]:
        return self.manifest.get_capability(capability_id)

    async def authenticate(
        self,
        scheme: Union[AuthSchemeKind, str],
        credentials: Optional[Credentials] = None,
        *,
        scopes: Optional[set[Scope]] = None,
    ) -> Union[Session, PendingAuthorization]:
        """Negotiate a session; the authorization-code flow returns a PendingAuthorization."""
        outcome = await self.auth.acquire_session(scheme, credentials, scopes=scopes)
        if isinstance(outcome, Session):
            self.session = outcome
        return outcome

    async def complete_authorization(
        self,
        pending: PendingAuthorization,
        *,
        authorization_response: Optional[str] = None,
        code: Optional[str] = None,
        state: Optional[str] = None,
    ) -> Session:
        session = await self.auth.complete_authorization(
            pending, authorization_response=authorization_response, code=code, state=state
        )
        self.session = session
        return session

    def _session(self, session: Optional[Session]) -> Session:
        chosen = session or self.session
        if chosen is None:
            raise AuthUnauthorizedError(
                f"No session for {self.host}; call authenticate() first",
                details={"host": self.host},
            )
        return chosen

    async def invoke(
        self,
        capability_id: str,
        arguments: Optional[dict[str, Any]] = None,
        *,
        session: Optional[Session] = None,
        confirmation: Optional[ConfirmationToken] = None,
        rate_limit_policy: Optional[RateLimitPolicy] = None,
        timeout: Optional[float] = None,
    ) -> InvocationResult:
        return await self.invoker.invoke(
            capability_id,
            arguments,
            self._session(session),
            confirmation=confirmation,
            rate_limit_policy=rate_limit_policy,
            timeout=timeout,
        )

    async def run_workflow(
        self,
        workflow_id: str,
        arguments: Optional[dict[str, Any]] = None,
        *,
        session: Optional[Session] = None,
        confirm: Optional[ConfirmCallback] = None,
        step_arguments: Optional[dict[str, dict[str, Any]]] = None,
    ) -> WorkflowRun:
        return await self.workflows.execute(
            workflow_id,
            arguments,
            self._session(session),
            confirm=confirm,
            step_arguments=step_arguments,
        )

    async def revoke(self, session: Optional[Session] = None) -> None:
        """Revoke a session (default: the current one) and forget it."""
        target = self._session(session)
        await self.auth.revoke(target)
        if target is self.session:
            self.session = None


class ATPClient:
    """Async context manager owning the shared runtime resources.

    Per-host state (sessions, rate budgets, manifests) lives in HostContexts
    held by this client; nothing is module-global.
    """

    def __init__(
        self,
        config: Optional[RuntimeConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        audit: Optional[AuditLog] = None,
        rate_limiter: Optional[RateLimiter] = None,
        validator: Optional[ManifestValidator] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            config: Runtime configuration (default: RuntimeConfig())
            transport: httpx transport for every request (e.g. MockTransport)
            audit: Audit sink (default: InMemoryAuditLog)
            rate_limiter: Shared limiter (default: a new RateLimiter)
            validator: Manifest validator (default: ManifestValidator())
            sleep: Awaitable used for backoff and blocking waits
        """
        self.config = config or RuntimeConfig()
        self._transport = transport
        self._sleep = sleep
        self._http = httpx.AsyncClient(transport=transport, timeout=self.config.timeout)
        self.audit: AuditLog = audit if audit is not None else InMemoryAuditLog()
        self.rate_limiter = rate_limiter or RateLimiter(sleep=sleep)
        self.fetcher = ManifestFetcher(
            self._http,
            validator=validator,
            cache=ManifestCache(default_ttl=self.config.manifest_ttl),
            retry=self.config.retry,
            timeout=self.config.timeout,
            sleep=sleep,
        )
        self._hosts: dict[str, HostContext] = {}
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> ATPClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.aclose()
        self._hosts.clear()

    @property
    def hosts(self) -> dict[str, HostContext]:
        return dict(self._hosts)

    async def connect(self, host: str, *, refresh: bool = False) -> HostContext:
        """Discover ``host`` and return its HostContext.

        The context is reused while the manifest is unchanged; a changed
        manifest produces a new context and reseeds the host's rate budget.

        Raises:
            DiscoveryError: Manifest missing, unreachable or served insecurely
            ManifestValidationError: Manifest rejected
        """
        key, origin = normalize_origin(host)
        if refresh:
            self.fetcher.invalidate(key)
        manifest = await self.fetcher.discover(key)
        async with self._lock:
            context = self._hosts.get(key)
            if context is not None and context.manifest == manifest:
                return context
            self.rate_limiter.register(key, manifest.rate_limit)
            auth = AuthManager(
                key,
                manifest.auth,
                agent_identity=self.config.agent_identity,
                transport=self._transport,
                timeout=self.config.timeout,
            )
            invoker = CapabilityInvoker(
                key,
                origin,
                manifest,
                auth,
                self.rate_limiter,
                self._http,
                audit=self.audit,
                config=self.config,
                sleep=self._sleep,
            )
            context = HostContext(key, origin, manifest, auth, invoker)
            self._hosts[key] = context
            logger.info(
                "atp.client.connected",
                host=key,
                manifest=manifest.name,
                version=manifest.version,
                capabilities=len(manifest.capabilities),
            )
            return context

    def disconnect(self, host: str) -> None:
        """Forget a host's context and cached manifest."""
        key, _ = normalize_origin(host)
        self._hosts.pop(key, None)
        self.fetcher.invalidate(key)
