"""Enumerations for the ATP data model."""

from enum import Enum


class HttpMethod(str, Enum):
    """HTTP methods a capability may declare."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"

    def carries_body(self) -> bool:
        """Return True if arguments travel in a JSON body by default."""
        return self in (HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH)


class ParameterType(str, Enum):
    """Type tag of a capability parameter."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"

    def is_numeric(self) -> bool:
        return self in (ParameterType.INTEGER, ParameterType.NUMBER)


class ParameterLocation(str, Enum):
    """Where an argument is placed in the outgoing request."""

    PATH = "path"
    QUERY = "query"
    BODY = "body"
    HEADER = "header"


class AuthSchemeKind(str, Enum):
    """Negotiable authentication schemes.

    OAuth2 schemes are split by flow because each flow negotiates
    differently.
    """

    OAUTH2_AUTHORIZATION_CODE = "oauth2-authorizationCode"
    OAUTH2_CLIENT_CREDENTIALS = "oauth2-clientCredentials"
    API_KEY = "apiKey"
    BEARER = "bearer"
    DELEGATED = "delegated"


class AuthState(str, Enum):
    """Session lifecycle states.

    Terminal states are REFRESH_FAILED and REVOKED.

    Example:
        >>> AuthState.REVOKED.is_terminal()
        True
    """

    UNAUTHENTICATED = "unauthenticated"
    NEGOTIATING = "negotiating"
    AUTHORIZED = "authorized"
    EXPIRED = "expired"
    REFRESHING = "refreshing"
    REFRESH_FAILED = "refresh_failed"
    REVOKED = "revoked"

    @classmethod
    def terminal_states(cls) -> frozenset["AuthState"]:
        return frozenset({cls.REFRESH_FAILED, cls.REVOKED})

    def is_terminal(self) -> bool:
        return self in self.terminal_states()


class RateLimitPolicy(str, Enum):
    """What an invocation does when the host's budget is exhausted."""

    BLOCK = "block"
    FAIL = "fail"


class InvocationOutcome(str, Enum):
    """Audit classification of one invoke() call."""

    SUCCESS = "success"
    PARAMETER_ERROR = "parameter_error"
    SCOPE_DENIED = "scope_denied"
    CONFIRMATION_REQUIRED = "confirmation_required"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    CLIENT_FAULT = "client_fault"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    SCHEMA_MISMATCH = "schema_mismatch"
    CANCELLED = "cancelled"
    ERROR = "error"


class WorkflowStatus(str, Enum):
    """Workflow run states.

    Terminal states are COMPLETED, ABORTED and FAILED.
    """

    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.ABORTED, WorkflowStatus.FAILED)
