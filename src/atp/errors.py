"""ATP runtime error taxonomy.

Every error raised by the runtime derives from :class:`ATPError`, which
carries a machine-readable ``code`` (``atp:<area>/<kind>``), a human-readable
message and a ``details`` dict. Errors group by the component that raises
them:

- Discovery: ManifestNotFoundError, DiscoveryNetworkError, InsecureTransportError
- Validation: ManifestValidationError (batched list of ValidationIssue)
- Auth: AuthUnauthorizedError, UnrefreshableError, UnsupportedSchemeError,
  IdentityRequiredError, AuthorizationStateError, InvalidTransitionError
- Invocation gates: ParameterError, ScopeError, ConfirmationRequiredError,
  RateLimitedError
- Invocation outcome: InvocationClientFault, InvocationServerError,
  InvocationTimeoutError, InvocationNetworkError, ResponseSchemaError
- Workflow: WorkflowUnknownStepError, WorkflowCycleError
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ATPError(Exception):
    """Base exception for all ATP runtime errors.

    Attributes:
        code: Error code following the atp:<area>/<kind> pattern
        message: Human-readable error message
        details: Optional additional error context
    """

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to ``{code, message, details}`` dict."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# --------------------------------------------------------------------------- #
# Discovery
# --------------------------------------------------------------------------- #


class DiscoveryError(ATPError):
    """Base class for manifest discovery failures.

    Attributes:
        host: Host whose manifest could not be discovered
    """

    def __init__(
        self, code: str, message: str, host: str, details: dict[str, Any] | None = None
    ) -> None:
        super().__init__(code=code, message=message, details={"host": host, **(details or {})})
        self.host = host


class ManifestNotFoundError(DiscoveryError):
    """The host does not publish a manifest (404). Terminal, never retried."""

    def __init__(self, host: str, url: str) -> None:
        super().__init__(
            code="atp:discovery/not_found",
            message=f"No agent manifest published at {url}",
            host=host,
            details={"url": url},
        )
        self.url = url


class DiscoveryNetworkError(DiscoveryError):
    """Transient network failures persisted after all retry attempts."""

    def __init__(self, host: str, reason: str, attempts: int) -> None:
        super().__init__(
            code="atp:discovery/network",
            message=f"Manifest discovery for {host} failed after {attempts} attempts: {reason}",
            host=host,
            details={"reason": reason, "attempts": attempts},
        )
        self.reason = reason
        self.attempts = attempts


class InsecureTransportError(DiscoveryError):
    """A non-https URL was requested or redirected to. Always fatal."""

    def __init__(self, host: str, url: str) -> None:
        super().__init__(
            code="atp:discovery/insecure_transport",
            message=f"Refusing non-secure transport for {url}; https is required",
            host=host,
            details={"url": url},
        )
        self.url = url


# --------------------------------------------------------------------------- #
# Validation
# --------------------------------------------------------------------------- #


class ValidationErrorKind(str, Enum):
    """Classification of a single manifest validation problem."""

    SCHEMA_VIOLATION = "schema_violation"
    DUPLICATE_ID = "duplicate_id"
    DANGLING_REFERENCE = "dangling_reference"
    UNGRANTABLE_SCOPE = "ungrantable_scope"
    UNKNOWN_STEP = "unknown_step"
    CYCLIC_WORKFLOW = "cyclic_workflow"


@dataclass(frozen=True)
class ValidationIssue:
    """One problem found in a manifest.

    Attributes:
        kind: Problem classification
        path: Dotted location in the document (e.g. "capabilities.2.id")
        message: Human-readable description
    """

    kind: ValidationErrorKind
    path: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "path": self.path, "message": self.message}

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.path}: {self.message}"


class ManifestValidationError(ATPError):
    """Raised when a manifest fails validation.

    Carries every problem found in a single pass so that a manifest author
    can fix them all at once.

    Attributes:
        issues: All validation problems, in the order they were found
    """

    def __init__(self, issues: list[ValidationIssue]) -> None:
        count = len(issues)
        summary = "; ".join(str(issue) for issue in issues[:5])
        if count > 5:
            summary += f"; ... ({count - 5} more)"
        super().__init__(
            code="atp:manifest/invalid",
            message=f"Manifest rejected with {count} problem(s): {summary}",
            details={"issues": [issue.to_dict() for issue in issues]},
        )
        self.issues = list(issues)

    def kinds(self) -> set[ValidationErrorKind]:
        """Return the distinct problem kinds present."""
        return {issue.kind for issue in self.issues}


# --------------------------------------------------------------------------- #
# Auth
# --------------------------------------------------------------------------- #


class AuthError(ATPError):
    """Base class for authentication and session failures."""


class AuthUnauthorizedError(AuthError):
    """Credentials were rejected by the token endpoint or the capability host."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(code="atp:auth/unauthorized", message=message, details=details)


class UnrefreshableError(AuthError):
    """The session cannot be refreshed and must be re-negotiated. Terminal."""

    def __init__(self, scheme: str, reason: str) -> None:
        super().__init__(
            code="atp:auth/unrefreshable",
            message=f"Session for scheme '{scheme}' cannot be refreshed: {reason}",
            details={"scheme": scheme, "reason": reason},
        )
        self.scheme = scheme
        self.reason = reason


class UnsupportedSchemeError(AuthError):
    """Raised when a scheme is not declared by the manifest or not supported.

    Attributes:
        scheme: The requested scheme
        supported_schemes: Schemes the manifest declares
    """

    def __init__(self, scheme: str, supported_schemes: set[str] | frozenset[str]) -> None:
        supported_list = sorted(supported_schemes)
        super().__init__(
            code="atp:auth/unsupported_scheme",
            message=(
                f"Unsupported authentication scheme '{scheme}'. "
                f"Declared schemes: {', '.join(supported_list) or 'none'}"
            ),
            details={"scheme": scheme, "supported_schemes": supported_list},
        )
        self.scheme = scheme
        self.supported_schemes = supported_schemes


class IdentityRequiredError(AuthError):
    """The manifest demands a verifiable agent identity the session lacks."""

    def __init__(self, header: str) -> None:
        super().__init__(
            code="atp:auth/identity_required",
            message=f"Host requires a verifiable agent identity in header '{header}'",
            details={"header": header},
        )
        self.header = header


class AuthorizationStateError(AuthError):
    """The authorization-code callback does not match the pending authorization."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            code="atp:auth/authorization_state",
            message=f"Authorization callback rejected: {reason}",
            details={"reason": reason},
        )
        self.reason = reason


class InvalidTransitionError(ATPError):
    """Raised when a session attempts a transition its state machine forbids."""

    def __init__(self, from_state: str, to_state: str) -> None:
        super().__init__(
            code="atp:auth/invalid_transition",
            message=f"Invalid transition from '{from_state}' to '{to_state}'",
            details={"from_state": from_state, "to_state": to_state},
        )
        self.from_state = from_state
        self.to_state = to_state


# --------------------------------------------------------------------------- #
# Invocation gates
# --------------------------------------------------------------------------- #


class ParameterError(ATPError):
    """Caller-supplied arguments do not satisfy the capability's parameters.

    Attributes:
        capability_id: Capability being invoked
        problems: One message per offending argument
    """

    def __init__(self, capability_id: str, problems: list[str]) -> None:
        super().__init__(
            code="atp:invocation/invalid_parameters",
            message=f"Invalid arguments for '{capability_id}': {'; '.join(problems)}",
            details={"capability_id": capability_id, "problems": list(problems)},
        )
        self.capability_id = capability_id
        self.problems = list(problems)


class ScopeError(ATPError):
    """The session lacks scopes the capability requires. No request was sent."""

    def __init__(self, capability_id: str, missing: set[str]) -> None:
        missing_list = sorted(missing)
        super().__init__(
            code="atp:invocation/insufficient_scope",
            message=f"Session lacks scopes {missing_list} required by '{capability_id}'",
            details={"capability_id": capability_id, "missing_scopes": missing_list},
        )
        self.capability_id = capability_id
        self.missing = set(missing)


class ConfirmationRequiredError(ATPError):
    """A side-effecting capability needs a fresh human acknowledgment."""

    def __init__(self, capability_id: str, confirmation_message: str, reason: str) -> None:
        super().__init__(
            code="atp:invocation/confirmation_required",
            message=f"Capability '{capability_id}' requires confirmation: {reason}",
            details={
                "capability_id": capability_id,
                "confirmation_message": confirmation_message,
                "reason": reason,
            },
        )
        self.capability_id = capability_id
        self.confirmation_message = confirmation_message
        self.reason = reason


class RateLimitedError(ATPError):
    """The host's request budget is exhausted.

    Attributes:
        host: Host whose budget is exhausted
        retry_after: Seconds until a request may be admitted
        error_body: Structured error body from the server, if any
    """

    def __init__(
        self,
        host: str,
        retry_after: float,
        error_body: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            code="atp:invocation/rate_limited",
            message=f"Rate limit exhausted for {host}; retry after {retry_after:.2f}s",
            details={"host": host, "retry_after": retry_after, "error": error_body or {}},
        )
        self.host = host
        self.retry_after = retry_after
        self.error_body = error_body or {}


# --------------------------------------------------------------------------- #
# Invocation outcome
# --------------------------------------------------------------------------- #


class InvocationError(ATPError):
    """Base class for failures after a request was dispatched.

    Attributes:
        capability_id: Capability being invoked
        status_code: HTTP status of the final response, if any
        error_body: Structured ``{code, message, details, retryAfter}`` body, verbatim
    """

    def __init__(
        self,
        code: str,
        message: str,
        capability_id: str,
        status_code: int | None = None,
        error_body: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            details={
                "capability_id": capability_id,
                "status_code": status_code,
                "error": error_body or {},
            },
        )
        self.capability_id = capability_id
        self.status_code = status_code
        self.error_body = error_body or {}


class InvocationClientFault(InvocationError):
    """The host rejected the request with a non-retryable 4xx status."""

    def __init__(
        self, capability_id: str, status_code: int, error_body: dict[str, Any] | None = None
    ) -> None:
        super().__init__(
            code="atp:invocation/client_fault",
            message=f"'{capability_id}' rejected with HTTP {status_code}",
            capability_id=capability_id,
            status_code=status_code,
            error_body=error_body,
        )


class InvocationServerError(InvocationError):
    """The host kept answering 5xx after all retry attempts."""

    def __init__(
        self,
        capability_id: str,
        status_code: int,
        attempts: int,
        error_body: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            code="atp:invocation/server",
            message=f"'{capability_id}' failed with HTTP {status_code} after {attempts} attempts",
            capability_id=capability_id,
            status_code=status_code,
            error_body=error_body,
        )
        self.attempts = attempts


class InvocationTimeoutError(InvocationError):
    """The invocation did not complete within its timeout."""

    def __init__(self, capability_id: str, timeout: float | None) -> None:
        super().__init__(
            code="atp:invocation/timeout",
            message=f"'{capability_id}' timed out after {timeout}s",
            capability_id=capability_id,
        )
        self.timeout = timeout


class InvocationNetworkError(InvocationError):
    """The request could not be delivered after all retry attempts."""

    def __init__(self, capability_id: str, reason: str, attempts: int) -> None:
        super().__init__(
            code="atp:invocation/network",
            message=f"'{capability_id}' unreachable after {attempts} attempts: {reason}",
            capability_id=capability_id,
        )
        self.reason = reason
        self.attempts = attempts


class ResponseSchemaError(InvocationError):
    """A 2xx body did not match the declared response schema (strict mode only)."""

    def __init__(self, capability_id: str, status_code: int, problems: list[str]) -> None:
        super().__init__(
            code="atp:invocation/response_schema",
            message=f"Response from '{capability_id}' violates its schema: {'; '.join(problems)}",
            capability_id=capability_id,
            status_code=status_code,
        )
        self.problems = list(problems)


# --------------------------------------------------------------------------- #
# Workflow
# --------------------------------------------------------------------------- #


class WorkflowError(ATPError):
    """Base class for workflow execution failures."""


class WorkflowUnknownStepError(WorkflowError):
    """A workflow references a step that is not a known capability."""

    def __init__(self, workflow_id: str, step_id: str) -> None:
        super().__init__(
            code="atp:workflow/unknown_step",
            message=f"Workflow '{workflow_id}' references unknown step '{step_id}'",
            details={"workflow_id": workflow_id, "step_id": step_id},
        )
        self.workflow_id = workflow_id
        self.step_id = step_id


class WorkflowCycleError(WorkflowError):
    """A step was revisited within the same run."""

    def __init__(self, workflow_id: str, step_id: str, path: list[str]) -> None:
        super().__init__(
            code="atp:workflow/cycle_detected",
            message=f"Workflow '{workflow_id}' revisited step '{step_id}' ({' -> '.join(path)})",
            details={"workflow_id": workflow_id, "step_id": step_id, "path": list(path)},
        )
        self.workflow_id = workflow_id
        self.step_id = step_id
        self.path = list(path)


class ConditionSyntaxError(WorkflowError):
    """A conditional expression could not be parsed."""

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(
            code="atp:workflow/condition_syntax",
            message=f"Invalid condition '{expression}': {reason}",
            details={"expression": expression, "reason": reason},
        )
        self.expression = expression
        self.reason = reason
