"""Capability invocation.

CapabilityInvoker runs one capability call end to end. Each step is a hard
gate; a failure aborts before the next:

1. parameter validation (ParameterError, every problem listed)
2. scope enforcement (ScopeError, no network activity)
3. confirmation gate (ConfirmationRequiredError, no network activity)
4. rate admission (blocks or raises RateLimitedError, per policy)
5. dispatch with standard agent, auth and identity headers
6. response handling: schema diagnostics on 2xx, one refresh-and-retry on
   401/403, RateLimiter update on 429, bounded retries on 5xx
7. exactly one audit record, whatever happened
"""

from __future__ import annotations

import asyncio
import hashlib
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import jsonschema

from atp.audit import AuditLog, InMemoryAuditLog, InvocationRecord, utcnow
from atp.auth.manager import AuthManager
from atp.auth.scopes import enforce_scopes
from atp.auth.session import Session
from atp.config import RuntimeConfig
from atp.errors import (
    ATPError,
    AuthError,
    AuthUnauthorizedError,
    ConfirmationRequiredError,
    InvocationClientFault,
    InvocationNetworkError,
    InvocationServerError,
    InvocationTimeoutError,
    ParameterError,
    RateLimitedError,
    ResponseSchemaError,
    ScopeError,
)
from atp.models.constants import (
    ATP_PROTOCOL_VERSION,
    HEADER_AGENT_NAME,
    HEADER_PROTOCOL_VERSION,
    HEADER_RETRY_AFTER,
    USER_AGENT,
)
from atp.models.enums import InvocationOutcome, RateLimitPolicy
from atp.models.manifest import Capability, Manifest
from atp.observability import get_logger, get_metrics, sanitize_for_logging
from atp.transport.arguments import build_url, route_arguments, validate_arguments
from atp.transport.rate_limit import RateLimiter
from atp.transport.retry import (
    TRANSIENT_ERRORS,
    calculate_backoff,
    error_retry_after,
    is_retryable_status,
    parse_retry_after,
)
from atp.utils.sanitization import sanitize_url

logger = get_logger(__name__)

_OUTCOMES: tuple[tuple[type[Exception], InvocationOutcome], ...] = (
    (ParameterError, InvocationOutcome.PARAMETER_ERROR),
    (ScopeError, InvocationOutcome.SCOPE_DENIED),
    (ConfirmationRequiredError, InvocationOutcome.CONFIRMATION_REQUIRED),
    (RateLimitedError, InvocationOutcome.RATE_LIMITED),
    (AuthError, InvocationOutcome.AUTH_FAILED),
    (ResponseSchemaError, InvocationOutcome.SCHEMA_MISMATCH),
    (InvocationClientFault, InvocationOutcome.CLIENT_FAULT),
    (InvocationServerError, InvocationOutcome.SERVER_ERROR),
    (InvocationTimeoutError, InvocationOutcome.TIMEOUT),
    (InvocationNetworkError, InvocationOutcome.NETWORK_ERROR),
)


def classify_error(error: BaseException) -> InvocationOutcome:
    """Map an error raised by invoke() to its audit outcome."""
    for error_type, outcome in _OUTCOMES:
        if isinstance(error, error_type):
            return outcome
    return InvocationOutcome.ERROR


def message_digest(message: str) -> str:
    return hashlib.sha256(message.encode("utf-8")).hexdigest()


class ConfirmationToken:
    """Single-use proof that a human saw a capability's confirmation message.

    A token is bound to one capability id and to a digest of the exact
    message shown. It is consumed by the first invoke() that checks it and
    can never be replayed.

    Example:
        >>> print(capability.confirmation.message)  # shown to the human
        >>> token = ConfirmationToken.acknowledge(capability)
        >>> await invoker.invoke(capability, args, session, confirmation=token)
    """

    def __init__(self, capability_id: str, digest: str) -> None:
        self.capability_id = capability_id
        self.message_digest = digest
        self.nonce = secrets.token_urlsafe(16)
        self._consumed = False
        self._lock = threading.Lock()

    @classmethod
    def acknowledge(cls, capability: Capability, message: Optional[str] = None) -> ConfirmationToken:
        """Issue a token after ``message`` (default: the declared one) was presented."""
        if message is None:
            message = capability.confirmation.message if capability.confirmation else ""
        return cls(capability.id, message_digest(message))

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self, capability: Capability) -> None:
        """Spend the token on ``capability``.

        Raises:
            ConfirmationRequiredError: Wrong capability, wrong message, or already used
        """
        expected = capability.confirmation.message if capability.confirmation else ""
        if self.capability_id != capability.id:
            raise ConfirmationRequiredError(
                capability.id, expected, "acknowledgment was issued for another capability"
            )
        if self.message_digest != message_digest(expected):
            raise ConfirmationRequiredError(
                capability.id, expected, "acknowledgment covers a different confirmation message"
            )
        with self._lock:
            if self._consumed:
                raise ConfirmationRequiredError(
                    capability.id, expected, "acknowledgment was already used"
                )
            self._consumed = True

    def __repr__(self) -> str:
        return f"ConfirmationToken(capability_id={self.capability_id!r}, consumed={self._consumed})"


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of a successful invocation.

    Attributes:
        capability_id: Capability invoked
        status_code: HTTP status of the final response
        headers: Response headers
        body: Parsed JSON body (or text for non-JSON responses; None when empty)
        attempts: Network attempts made
        diagnostics: Response-schema mismatches (empty when the body conforms)
        duration_seconds: Wall time of the call
    """

    capability_id: str
    status_code: int
    headers: dict[str, str]
    body: Any
    attempts: int = 1
    diagnostics: tuple[str, ...] = ()
    duration_seconds: float = 0.0

    @property
    def schema_valid(self) -> bool:
        return not self.diagnostics


@dataclass
class _CallState:
    attempts: int = 0
    status_code: Optional[int] = None
    token_held: bool = False


def _error_body(response: httpx.Response) -> dict[str, Any]:
    """Extract the structured ``{error: {...}}`` body, verbatim."""
    try:
        payload = response.json()
    except ValueError:
        return {}
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return error
        if "code" in payload or "message" in payload:
            return payload
    return {}


def _parse_body(response: httpx.Response) -> Any:
    if response.status_code == 204 or not response.content:
        return None
    content_type = response.headers.get("Content-Type", "")
    if "json" in content_type or not content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class CapabilityInvoker:
    """Executes capability calls against one host.

    The invoker holds no per-call state between calls; a session, the
    per-host RateLimiter and the AuthManager are the only shared mutable
    pieces.
    """

    def __init__(
        self,
        host: str,
        origin: str,
        manifest: Manifest,
        auth: AuthManager,
        rate_limiter: RateLimiter,
        http_client: httpx.AsyncClient,
        *,
        audit: Optional[AuditLog] = None,
        config: Optional[RuntimeConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.host = host
        self.origin = origin
        self.manifest = manifest
        self.auth = auth
        self.rate_limiter = rate_limiter
        self._client = http_client
        self.audit: AuditLog = audit if audit is not None else InMemoryAuditLog()
        self.config = config or RuntimeConfig()
        self._sleep = sleep
        self._validators: dict[str, jsonschema.protocols.Validator] = {}

    def _resolve(self, capability: Union[Capability, str]) -> Capability:
        if isinstance(capability, Capability):
            return capability
        found = self.manifest.get_capability(capability)
        if found is None:
            raise ATPError(
                code="atp:invocation/unknown_capability",
                message=f"Host {self.host} declares no capability '{capability}'",
                details={"capability_id": capability, "host": self.host},
            )
        return found

    async def invoke(
        self,
        capability: Union[Capability, str],
        arguments: Optional[dict[str, Any]],
        session: Session,
        *,
        confirmation: Optional[ConfirmationToken] = None,
        rate_limit_policy: Optional[RateLimitPolicy] = None,
        timeout: Optional[float] = None,
        workflow_id: Optional[str] = None,
    ) -> InvocationResult:
        """Invoke a capability.

        Args:
            capability: Capability or its id
            arguments: Caller arguments keyed by parameter name
            session: Authorized session for this host
            confirmation: Acknowledgment for confirmation-gated capabilities
            rate_limit_policy: BLOCK or FAIL when the budget is exhausted
            timeout: Per-request timeout override in seconds
            workflow_id: Workflow this call belongs to, for the audit record

        Returns:
            InvocationResult with the parsed response body

        Raises:
            ParameterError, ScopeError, ConfirmationRequiredError: Gate failures,
                raised before any network activity
            RateLimitedError: Budget exhausted or server backpressure (429)
            AuthError: Identity missing, or credentials rejected after one refresh
            InvocationError: Client fault, server error, timeout or network failure
        """
        capability_id = capability.id if isinstance(capability, Capability) else capability
        started = time.monotonic()
        timestamp = utcnow()
        call = _CallState()
        outcome = InvocationOutcome.ERROR
        error_code: Optional[str] = None
        try:
            resolved = self._resolve(capability)
            result = await self._invoke(
                resolved, arguments, session, call, confirmation, rate_limit_policy, timeout
            )
            outcome = InvocationOutcome.SUCCESS
            return result
        except asyncio.CancelledError:
            outcome = InvocationOutcome.CANCELLED
            raise
        except ATPError as e:
            outcome = classify_error(e)
            error_code = e.code
            raise
        finally:
            if call.token_held and call.attempts == 0:
                self.rate_limiter.refund(self.host)
            duration = time.monotonic() - started
            self._record(
                InvocationRecord(
                    agent_identity=session.agent_identity or self.config.agent_name,
                    capability_id=capability_id,
                    host=self.host,
                    timestamp=timestamp,
                    outcome=outcome,
                    status_code=call.status_code,
                    attempts=call.attempts,
                    duration_seconds=duration,
                    error_code=error_code,
                    workflow_id=workflow_id,
                )
            )

    def _record(self, entry: InvocationRecord) -> None:
        metrics = get_metrics()
        metrics.increment_counter(
            "atp_invocations_total",
            {"capability": entry.capability_id, "outcome": entry.outcome.value},
        )
        metrics.observe_histogram(
            "atp_invocation_duration_seconds",
            entry.duration_seconds,
            {"capability": entry.capability_id},
        )
        self.audit.record(entry)

    async def _invoke(
        self,
        capability: Capability,
        arguments: Optional[dict[str, Any]],
        session: Session,
        call: _CallState,
        confirmation: Optional[ConfirmationToken],
        rate_limit_policy: Optional[RateLimitPolicy],
        timeout: Optional[float],
    ) -> InvocationResult:
        started = time.monotonic()

        typed = validate_arguments(capability, arguments)
        enforce_scopes(capability, session.scopes)
        self.auth.require_identity(session)
        if capability.requires_confirmation:
            if confirmation is None:
                raise ConfirmationRequiredError(
                    capability.id,
                    capability.confirmation.message if capability.confirmation else "",
                    "no acknowledgment supplied",
                )
            confirmation.consume(capability)

        if capability.deprecated is not None:
            logger.warning(
                "atp.invoker.deprecated_capability",
                host=self.host,
                capability_id=capability.id,
                since=capability.deprecated.since,
                replaced_by=capability.deprecated.replaced_by,
            )

        await self.rate_limiter.acquire(self.host, rate_limit_policy or self.config.rate_limit_policy)
        call.token_held = True

        routed = route_arguments(capability, typed)
        url = build_url(self.origin, capability.endpoint, routed.path)
        method = capability.method.value
        send_body = capability.method.carries_body() or bool(routed.body)
        retry = self.config.retry
        request_timeout = timeout or self.config.timeout
        refreshed = False

        while True:
            await self.auth.ensure_fresh(session)
            headers = {
                "User-Agent": USER_AGENT,
                "Accept": "application/json",
                HEADER_AGENT_NAME: self.config.agent_name,
                HEADER_PROTOCOL_VERSION: ATP_PROTOCOL_VERSION,
                **routed.headers,
            }
            auth_params: dict[str, Any] = {}
            self.auth.attach_identity(headers, session, auth_params)
            params = list(routed.query) + [(key, str(value)) for key, value in auth_params.items()]

            call.attempts += 1
            logger.debug(
                "atp.invoker.dispatch",
                host=self.host,
                capability_id=capability.id,
                method=method,
                url=sanitize_url(url),
                attempt=call.attempts,
            )
            try:
                response = await self._client.request(
                    method,
                    url,
                    params=params or None,
                    json=routed.body if send_body else None,
                    headers=headers,
                    timeout=request_timeout,
                )
            except TRANSIENT_ERRORS as e:
                if call.attempts < retry.max_attempts:
                    await self._backoff(capability, call, "connect", str(e))
                    continue
                raise InvocationNetworkError(
                    capability.id, f"{type(e).__name__}: {e}", call.attempts
                ) from e
            except httpx.TimeoutException as e:
                raise InvocationTimeoutError(capability.id, request_timeout) from e
            except httpx.TransportError as e:
                raise InvocationNetworkError(
                    capability.id, f"{type(e).__name__}: {e}", call.attempts
                ) from e

            status = response.status_code
            call.status_code = status
            self.rate_limiter.observe_headers(self.host, response.headers)

            if status in (401, 403):
                if not refreshed:
                    refreshed = True
                    logger.info(
                        "atp.invoker.auth_retry",
                        host=self.host,
                        capability_id=capability.id,
                        status_code=status,
                    )
                    session.mark_expired()
                    await self.auth.refresh(session)
                    continue
                raise AuthUnauthorizedError(
                    f"{capability.id} rejected credentials with HTTP {status} after refresh",
                    details={"status_code": status, "error": _error_body(response)},
                )

            if status == 429:
                body = _error_body(response)
                retry_after = parse_retry_after(response.headers.get(HEADER_RETRY_AFTER))
                if retry_after is None:
                    retry_after = error_retry_after(body)
                enforced = self.rate_limiter.on_rate_limited(self.host, retry_after)
                raise RateLimitedError(host=self.host, retry_after=enforced, error_body=body)

            if is_retryable_status(status):
                if call.attempts < retry.max_attempts:
                    await self._backoff(capability, call, "server_error", f"HTTP {status}")
                    continue
                body = _error_body(response)
                self._log_failure(capability, status, body)
                raise InvocationServerError(capability.id, status, call.attempts, body)

            if status >= 400:
                body = _error_body(response)
                self._log_failure(capability, status, body)
                raise InvocationClientFault(capability.id, status, body)

            body = _parse_body(response)
            diagnostics = self._check_response(capability, body)
            if diagnostics:
                if self.config.strict_responses:
                    raise ResponseSchemaError(capability.id, status, diagnostics)
                logger.warning(
                    "atp.invoker.response_schema_mismatch",
                    host=self.host,
                    capability_id=capability.id,
                    problems=diagnostics[:5],
                )
            return InvocationResult(
                capability_id=capability.id,
                status_code=status,
                headers=dict(response.headers),
                body=body,
                attempts=call.attempts,
                diagnostics=tuple(diagnostics),
                duration_seconds=time.monotonic() - started,
            )

    def _log_failure(self, capability: Capability, status: int, body: dict[str, Any]) -> None:
        logger.warning(
            "atp.invoker.failed",
            host=self.host,
            capability_id=capability.id,
            status_code=status,
            error=sanitize_for_logging(body),
        )

    async def _backoff(
        self, capability: Capability, call: _CallState, reason: str, detail: str
    ) -> None:
        delay = calculate_backoff(call.attempts - 1, self.config.retry)
        get_metrics().increment_counter(
            "atp_invocation_retries_total", {"capability": capability.id, "reason": reason}
        )
        logger.warning(
            "atp.invoker.retry",
            host=self.host,
            capability_id=capability.id,
            reason=detail,
            attempt=call.attempts,
            max_attempts=self.config.retry.max_attempts,
            delay_seconds=round(delay, 2),
        )
        await self._sleep(delay)

    def _check_response(self, capability: Capability, body: Any) -> list[str]:
        """Validate a 2xx body against the declared response schema."""
        if capability.response is None:
            return []
        validator = self._validators.get(capability.id)
        if validator is None:
            root = {**capability.response, "schemas": self.manifest.schemas}
            validator_cls = jsonschema.validators.validator_for(
                root, default=jsonschema.Draft202012Validator
            )
            validator = validator_cls(root)
            self._validators[capability.id] = validator
        problems: list[str] = []
        for error in validator.iter_errors(body):
            location = "/".join(str(part) for part in error.absolute_path) or "$"
            problems.append(f"{location}: {error.message}")
        return problems
