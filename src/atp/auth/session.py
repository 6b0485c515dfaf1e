"""Live per-host credential state.

A Session is created by AuthManager, mutated in place only by refresh, and
destroyed on revocation or teardown. Its lifecycle is a small state
machine::

    UNAUTHENTICATED -> NEGOTIATING -> AUTHORIZED -> EXPIRED -> REFRESHING
    REFRESHING -> AUTHORIZED | REFRESH_FAILED (terminal)
    any non-terminal -> REVOKED (terminal)

Example:
    >>> can_transition(AuthState.AUTHORIZED, AuthState.EXPIRED)
    True
    >>> can_transition(AuthState.REVOKED, AuthState.AUTHORIZED)
    False
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from atp.errors import InvalidTransitionError
from atp.models.constants import TOKEN_REFRESH_BUFFER_SECONDS
from atp.models.enums import AuthSchemeKind, AuthState
from atp.models.types import AgentIdentity, Scope
from atp.utils.sanitization import sanitize_token

VALID_TRANSITIONS: dict[AuthState, set[AuthState]] = {
    AuthState.UNAUTHENTICATED: {AuthState.NEGOTIATING, AuthState.REVOKED},
    AuthState.NEGOTIATING: {
        AuthState.AUTHORIZED,
        AuthState.UNAUTHENTICATED,
        AuthState.REVOKED,
    },
    AuthState.AUTHORIZED: {AuthState.EXPIRED, AuthState.REFRESHING, AuthState.REVOKED},
    AuthState.EXPIRED: {AuthState.REFRESHING, AuthState.REFRESH_FAILED, AuthState.REVOKED},
    AuthState.REFRESHING: {
        AuthState.AUTHORIZED,
        AuthState.REFRESH_FAILED,
        AuthState.REVOKED,
    },
    AuthState.REFRESH_FAILED: set(),  # Terminal state
    AuthState.REVOKED: set(),  # Terminal state
}


def can_transition(from_state: AuthState, to_state: AuthState) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, set())


class Session:
    """Credential material and lifecycle state for one host.

    Attributes:
        host: Host this session authenticates against
        scheme: Negotiated scheme kind
        access_token: Bearer token, API key or delegated token
        token_type: Authorization header prefix for bearer-style tokens
        refresh_token: Refresh token, when the scheme issued one
        expires_at: Wall-clock expiry (seconds since epoch), None if unbounded
        scopes: Granted scope set
        agent_identity: Verifiable agent identity (did:web:...)
        state: Current lifecycle state
    """

    def __init__(
        self,
        host: str,
        scheme: AuthSchemeKind,
        *,
        access_token: str = "",
        token_type: str = "Bearer",
        refresh_token: Optional[str] = None,
        expires_at: Optional[float] = None,
        scopes: frozenset[Scope] | set[Scope] = frozenset(),
        agent_identity: Optional[AgentIdentity] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.host = host
        self.scheme = scheme
        self.access_token = access_token
        self.token_type = token_type
        self.refresh_token = refresh_token
        self.expires_at = expires_at
        self.scopes: frozenset[Scope] = frozenset(scopes)
        self.agent_identity = agent_identity
        self.state = AuthState.UNAUTHENTICATED
        self._clock = clock

    def transition(self, new_state: AuthState) -> None:
        """Move to ``new_state``.

        Raises:
            InvalidTransitionError: If the move is not in VALID_TRANSITIONS
        """
        if not can_transition(self.state, new_state):
            raise InvalidTransitionError(from_state=self.state.value, to_state=new_state.value)
        self.state = new_state

    def is_expired(self, buffer_seconds: float = TOKEN_REFRESH_BUFFER_SECONDS) -> bool:
        """True when the token is past, or within ``buffer_seconds`` of, expiry."""
        if self.expires_at is None:
            return False
        return self._clock() >= self.expires_at - buffer_seconds

    def mark_expired(self) -> None:
        if self.state is AuthState.AUTHORIZED:
            self.transition(AuthState.EXPIRED)

    @property
    def is_usable(self) -> bool:
        return self.state is AuthState.AUTHORIZED and not self.is_expired(buffer_seconds=0)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal()

    def has_scopes(self, required: set[Scope] | frozenset[Scope]) -> bool:
        return set(required) <= self.scopes

    def missing_scopes(self, required: set[Scope] | frozenset[Scope]) -> set[Scope]:
        return set(required) - self.scopes

    def apply_token(
        self,
        access_token: str,
        *,
        expires_at: Optional[float],
        token_type: str = "Bearer",
        refresh_token: Optional[str] = None,
        scopes: Optional[frozenset[Scope]] = None,
    ) -> None:
        """Replace the token material after a successful exchange or refresh."""
        self.access_token = access_token
        self.expires_at = expires_at
        self.token_type = token_type or "Bearer"
        if refresh_token is not None:
            self.refresh_token = refresh_token
        if scopes is not None:
            self.scopes = scopes

    def __repr__(self) -> str:
        return (
            f"Session(host={self.host!r}, scheme={self.scheme.value!r}, "
            f"state={self.state.value!r}, token={sanitize_token(self.access_token)!r}, "
            f"scopes={sorted(self.scopes)!r})"
        )
