"""Per-host authentication negotiation and session upkeep.

AuthManager turns a manifest's AuthSpec plus caller-supplied credentials
into Sessions, keeps them fresh, and stamps outgoing requests with
credential and identity headers.

- apiKey / bearer: authorized immediately with the static credential
- oauth2-clientCredentials: token endpoint exchange
- oauth2-authorizationCode: returns a PendingAuthorization; the caller
  resumes with complete_authorization once the redirect arrives
- delegated: authorized with a token a human principal delegated

Refresh is single-flight per session: concurrent callers share one
in-flight refresh, which is shielded from caller cancellation and always
clears its bookkeeping when done.
"""

from __future__ import annotations

import asyncio
import time
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union
from urllib.parse import parse_qs, urlsplit

import httpx

from atp.auth.oauth2 import OAuth2TokenClient, PendingAuthorization, TokenSet
from atp.auth.scopes import resolve_granted_scopes
from atp.auth.session import Session
from atp.errors import (
    AuthError,
    AuthorizationStateError,
    AuthUnauthorizedError,
    IdentityRequiredError,
    UnrefreshableError,
    UnsupportedSchemeError,
)
from atp.models.constants import TOKEN_REFRESH_BUFFER_SECONDS
from atp.models.enums import AuthSchemeKind, AuthState
from atp.models.manifest import (
    ApiKeyScheme,
    AuthSpec,
    DelegatedScheme,
    OAuth2Flow,
    OAuth2Scheme,
)
from atp.models.types import AgentIdentity, Scope
from atp.observability import get_logger, get_metrics

logger = get_logger(__name__)

DEFAULT_DELEGATED_CLIENT_ID = "atp-runtime"


@dataclass(frozen=True)
class Credentials:
    """Caller-supplied credential input for a negotiation.

    Attributes:
        api_key: Static API key (apiKey scheme)
        token: Static bearer token or delegated token
        client_id: OAuth2 client ID
        client_secret: OAuth2 client secret (omit for public clients)
        redirect_uri: Redirect URI for the authorization-code flow
        refresh_token: Refresh token accompanying a delegated token
        expires_at: Expiry of a static or delegated token (seconds since epoch)
        agent_identity: Verifiable agent identity (did:web:...)
    """

    api_key: Optional[str] = None
    token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    agent_identity: Optional[AgentIdentity] = None

    def __repr__(self) -> str:
        return f"Credentials(client_id={self.client_id!r}, redirect_uri={self.redirect_uri!r})"


@dataclass
class _Negotiation:
    token_client: Optional[OAuth2TokenClient]
    flow: Optional[OAuth2Flow]
    refresh_url: Optional[str]
    revocation_url: Optional[str]


def _missing_credentials(kind: AuthSchemeKind, what: str) -> AuthError:
    return AuthError(
        code="atp:auth/missing_credentials",
        message=f"Scheme {kind.value} requires {what}",
        details={"scheme": kind.value},
    )


class AuthManager:
    """Negotiates and maintains Sessions for one host.

    Example:
        >>> manager = AuthManager("shop.example.com", manifest.auth)
        >>> session = await manager.acquire_session(
        ...     "oauth2-clientCredentials",
        ...     Credentials(client_id="agent", client_secret="s3cret"),
        ... )
        >>> headers: dict[str, str] = {}
        >>> manager.attach_identity(headers, session)
    """

    def __init__(
        self,
        host: str,
        auth_spec: AuthSpec,
        *,
        agent_identity: Optional[AgentIdentity] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the manager.

        Args:
            host: Host the sessions authenticate against
            auth_spec: The manifest's auth declaration
            agent_identity: Default agent identity for new sessions
            transport: httpx transport for token endpoints (e.g. MockTransport)
            timeout: Token endpoint timeout in seconds
            clock: Wall-clock source for expiry checks
        """
        self.host = host
        self.auth_spec = auth_spec
        self._agent_identity = agent_identity
        self._transport = transport
        self._timeout = timeout
        self._clock = clock
        self._negotiations: weakref.WeakKeyDictionary[Session, _Negotiation] = (
            weakref.WeakKeyDictionary()
        )
        self._pending: dict[str, tuple[PendingAuthorization, Session, OAuth2TokenClient]] = {}
        self._refreshing: dict[Session, asyncio.Task[Session]] = {}
        self._lock = asyncio.Lock()

    @property
    def supported_schemes(self) -> set[AuthSchemeKind]:
        return self.auth_spec.kinds()

    def _token_client(self, client_id: str, client_secret: Optional[str]) -> OAuth2TokenClient:
        kwargs: dict[str, Any] = {"transport": self._transport, "clock": self._clock}
        if self._timeout is not None:
            kwargs["timeout"] = self._timeout
        return OAuth2TokenClient(client_id, client_secret, **kwargs)

    def _resolve_scheme(
        self, scheme: Union[AuthSchemeKind, str]
    ) -> tuple[AuthSchemeKind, Any]:
        supported = {kind.value for kind in self.supported_schemes}
        try:
            kind = AuthSchemeKind(scheme)
        except ValueError as e:
            raise UnsupportedSchemeError(str(scheme), supported) from e
        declared = self.auth_spec.scheme_for(kind)
        if declared is None:
            raise UnsupportedSchemeError(kind.value, supported)
        return kind, declared

    def _new_session(self, kind: AuthSchemeKind, credentials: Credentials) -> Session:
        session = Session(
            self.host,
            kind,
            agent_identity=credentials.agent_identity or self._agent_identity,
            clock=self._clock,
        )
        session.transition(AuthState.NEGOTIATING)
        return session

    # ------------------------------------------------------------------ #
    # Negotiation
    # ------------------------------------------------------------------ #

    async def acquire_session(
        self,
        scheme: Union[AuthSchemeKind, str],
        credentials: Optional[Credentials] = None,
        *,
        scopes: Optional[set[Scope]] = None,
    ) -> Union[Session, PendingAuthorization]:
        """Negotiate a session with the given scheme.

        Args:
            scheme: Scheme kind (e.g. "apiKey", "oauth2-clientCredentials")
            credentials: Credential input for the scheme
            scopes: Scopes to request; defaults to every scope the scheme declares

        Returns:
            An Authorized Session, or a PendingAuthorization for the
            authorization-code flow

        Raises:
            UnsupportedSchemeError: The manifest does not declare the scheme
            AuthUnauthorizedError: The token endpoint rejected the credentials
            AuthError: Required credential input is missing
        """
        kind, declared = self._resolve_scheme(scheme)
        credentials = credentials or Credentials()

        if kind in (AuthSchemeKind.API_KEY, AuthSchemeKind.BEARER):
            secret = credentials.api_key if kind is AuthSchemeKind.API_KEY else None
            secret = secret or credentials.token or credentials.api_key
            if not secret:
                raise _missing_credentials(kind, "a static credential")
            session = self._new_session(kind, credentials)
            session.apply_token(
                secret,
                expires_at=credentials.expires_at,
                scopes=resolve_granted_scopes(scopes, declared.declared_scopes()),
            )
            self._negotiations[session] = _Negotiation(None, None, None, None)
            return self._authorized(session)

        if kind is AuthSchemeKind.DELEGATED:
            assert isinstance(declared, DelegatedScheme)
            if not credentials.token:
                raise _missing_credentials(kind, "a delegated token")
            session = self._new_session(kind, credentials)
            session.apply_token(
                credentials.token,
                expires_at=credentials.expires_at,
                refresh_token=credentials.refresh_token,
                scopes=resolve_granted_scopes(scopes, declared.declared_scopes()),
            )
            client = self._token_client(
                credentials.client_id or DEFAULT_DELEGATED_CLIENT_ID, credentials.client_secret
            )
            self._negotiations[session] = _Negotiation(client, None, declared.refresh_url, None)
            return self._authorized(session)

        assert isinstance(declared, OAuth2Scheme)
        if not credentials.client_id:
            raise _missing_credentials(kind, "a client_id")
        client = self._token_client(credentials.client_id, credentials.client_secret)

        if kind is AuthSchemeKind.OAUTH2_CLIENT_CREDENTIALS:
            flow = declared.flows.client_credentials
            assert flow is not None
            session = self._new_session(kind, credentials)
            requested = resolve_granted_scopes(scopes, flow.scopes)
            try:
                tokens = await client.client_credentials(flow.token_url, requested)
            except AuthError:
                session.transition(AuthState.UNAUTHENTICATED)
                raise
            self._apply(session, tokens, requested)
            self._negotiations[session] = _Negotiation(
                client, flow, flow.refresh_url or flow.token_url, flow.revocation_url
            )
            return self._authorized(session)

        code_flow = declared.flows.authorization_code
        assert code_flow is not None
        if not credentials.redirect_uri:
            raise _missing_credentials(kind, "a redirect_uri")
        requested = resolve_granted_scopes(scopes, code_flow.scopes)
        url, state, verifier = client.authorization_url(
            code_flow.authorization_url, credentials.redirect_uri, requested
        )
        session = self._new_session(kind, credentials)
        pending = PendingAuthorization(
            host=self.host,
            authorization_url=url,
            state=state,
            code_verifier=verifier,
            redirect_uri=credentials.redirect_uri,
            scopes=requested,
        )
        self._pending[state] = (pending, session, client)
        logger.info("atp.auth.authorization_pending", host=self.host, scopes=sorted(requested))
        return pending

    async def complete_authorization(
        self,
        pending: PendingAuthorization,
        *,
        authorization_response: Optional[str] = None,
        code: Optional[str] = None,
        state: Optional[str] = None,
    ) -> Session:
        """Resume a suspended authorization-code negotiation.

        Args:
            pending: Value returned by acquire_session
            authorization_response: Full redirect URL received by the callback
            code: Authorization code, when not passing the full redirect URL
            state: State echoed back on the redirect

        Raises:
            AuthorizationStateError: Unknown/consumed negotiation, state mismatch or no code
            AuthUnauthorizedError: The provider denied access or rejected the code
        """
        error: Optional[str] = None
        if authorization_response is not None:
            query = parse_qs(urlsplit(authorization_response).query)
            code = code or query.get("code", [None])[0]
            state = state or query.get("state", [None])[0]
            error = query.get("error", [None])[0]

        entry = self._pending.pop(pending.state, None)
        if entry is None:
            raise AuthorizationStateError("no pending authorization for this state")
        _, session, client = entry
        if state != pending.state:
            session.transition(AuthState.UNAUTHENTICATED)
            raise AuthorizationStateError("state mismatch on authorization redirect")
        if error is not None:
            session.transition(AuthState.UNAUTHENTICATED)
            raise AuthUnauthorizedError(
                f"Authorization denied: {error}", details={"error": error}
            )
        if not code:
            session.transition(AuthState.UNAUTHENTICATED)
            raise AuthorizationStateError("authorization redirect carries no code")

        declared = self.auth_spec.scheme_for(AuthSchemeKind.OAUTH2_AUTHORIZATION_CODE)
        assert isinstance(declared, OAuth2Scheme) and declared.flows.authorization_code
        flow = declared.flows.authorization_code
        try:
            tokens = await client.exchange_code(
                flow.token_url, code, pending.redirect_uri, pending.code_verifier
            )
        except AuthError:
            session.transition(AuthState.UNAUTHENTICATED)
            raise
        self._apply(session, tokens, pending.scopes)
        self._negotiations[session] = _Negotiation(
            client, flow, flow.refresh_url, flow.revocation_url
        )
        return self._authorized(session)

    def _apply(self, session: Session, tokens: TokenSet, requested: frozenset[Scope]) -> None:
        session.apply_token(
            tokens.access_token,
            expires_at=tokens.expires_at,
            token_type=tokens.token_type,
            refresh_token=tokens.refresh_token,
            scopes=tokens.scopes or requested,
        )

    def _authorized(self, session: Session) -> Session:
        session.transition(AuthState.AUTHORIZED)
        logger.info(
            "atp.auth.session_authorized",
            host=self.host,
            scheme=session.scheme.value,
            scopes=sorted(session.scopes),
        )
        return session

    # ------------------------------------------------------------------ #
    # Refresh
    # ------------------------------------------------------------------ #

    async def refresh(self, session: Session) -> Session:
        """Refresh ``session`` in place, sharing any refresh already in flight.

        Raises:
            UnrefreshableError: No refresh endpoint or refresh token; the
                session moves to REFRESH_FAILED and must be re-negotiated
            AuthUnauthorizedError: The refresh endpoint rejected the request
        """
        async with self._lock:
            task = self._refreshing.get(session)
            if task is None:
                task = asyncio.ensure_future(self._do_refresh(session))
                self._refreshing[session] = task
                task.add_done_callback(lambda done: self._refresh_done(session, done))
        return await asyncio.shield(task)

    def _refresh_done(self, session: Session, task: asyncio.Task[Session]) -> None:
        self._refreshing.pop(session, None)
        if not task.cancelled():
            # Mark the exception retrieved even if every awaiter was cancelled
            task.exception()

    async def _do_refresh(self, session: Session) -> Session:
        metrics = get_metrics()
        if session.is_terminal:
            raise UnrefreshableError(session.scheme.value, f"session is {session.state.value}")
        if session.state is AuthState.AUTHORIZED:
            session.transition(AuthState.EXPIRED)

        negotiation = self._negotiations.get(session)
        refresh_url = negotiation.refresh_url if negotiation else None
        client = negotiation.token_client if negotiation else None
        can_reexchange = session.scheme is AuthSchemeKind.OAUTH2_CLIENT_CREDENTIALS
        if refresh_url is None or client is None or (
            not can_reexchange and not session.refresh_token
        ):
            session.transition(AuthState.REFRESH_FAILED)
            metrics.increment_counter("atp_auth_refresh_total", {"result": "unrefreshable"})
            reason = (
                "no refresh endpoint declared"
                if refresh_url is None
                else "no refresh token was issued"
            )
            logger.warning(
                "atp.auth.unrefreshable",
                host=self.host,
                scheme=session.scheme.value,
                reason=reason,
            )
            raise UnrefreshableError(session.scheme.value, reason)

        session.transition(AuthState.REFRESHING)
        try:
            if can_reexchange and not session.refresh_token:
                tokens = await client.client_credentials(refresh_url, session.scopes)
            else:
                assert session.refresh_token is not None
                tokens = await client.refresh(refresh_url, session.refresh_token, session.scopes)
        except (Exception, asyncio.CancelledError):
            if session.state is AuthState.REFRESHING:
                session.transition(AuthState.REFRESH_FAILED)
            metrics.increment_counter("atp_auth_refresh_total", {"result": "failure"})
            logger.warning("atp.auth.refresh_failed", host=self.host, scheme=session.scheme.value)
            raise

        self._apply(session, tokens, session.scopes)
        session.transition(AuthState.AUTHORIZED)
        metrics.increment_counter("atp_auth_refresh_total", {"result": "success"})
        logger.info("atp.auth.refreshed", host=self.host, scheme=session.scheme.value)
        return session

    async def ensure_fresh(self, session: Session) -> Session:
        """Refresh ``session`` if it is expired or within the refresh buffer."""
        if session.state is AuthState.EXPIRED or (
            session.state is AuthState.AUTHORIZED
            and session.is_expired(buffer_seconds=TOKEN_REFRESH_BUFFER_SECONDS)
        ):
            return await self.refresh(session)
        if session.state is AuthState.REFRESHING:
            return await self.refresh(session)
        return session

    # ------------------------------------------------------------------ #
    # Request identity
    # ------------------------------------------------------------------ #

    def require_identity(self, session: Session) -> None:
        """Raise IdentityRequiredError if the manifest demands an identity the session lacks."""
        identity = self.auth_spec.identity
        if identity is not None and identity.required and not session.agent_identity:
            raise IdentityRequiredError(header=identity.header)

    def attach_identity(
        self,
        headers: dict[str, str],
        session: Session,
        params: Optional[dict[str, Any]] = None,
    ) -> None:
        """Stamp credential and identity material onto an outgoing request.

        API keys declared ``in: query`` go into ``params``; everything else
        is a header.

        Raises:
            IdentityRequiredError: The manifest demands an agent identity the session lacks
            AuthUnauthorizedError: The session is not authorized
        """
        self.require_identity(session)
        identity = self.auth_spec.identity
        if identity is not None and session.agent_identity:
            headers[identity.header] = session.agent_identity

        if session.state is not AuthState.AUTHORIZED:
            raise AuthUnauthorizedError(
                f"Session for {self.host} is {session.state.value}",
                details={"state": session.state.value},
            )

        if session.scheme is AuthSchemeKind.API_KEY:
            declared = self.auth_spec.scheme_for(AuthSchemeKind.API_KEY)
            assert isinstance(declared, ApiKeyScheme)
            if declared.location == "query":
                if params is None:
                    raise ValueError("API key declared in query but no params mapping given")
                params[declared.name] = session.access_token
            else:
                headers[declared.name] = session.access_token
            return
        headers["Authorization"] = f"{session.token_type} {session.access_token}"

    # ------------------------------------------------------------------ #
    # Teardown
    # ------------------------------------------------------------------ #

    async def revoke(self, session: Session) -> None:
        """Revoke ``session``; remotely too when the flow declares a revocation endpoint."""
        if session.state is AuthState.REVOKED:
            return
        negotiation = self._negotiations.pop(session, None)
        token = session.access_token
        if session.is_terminal:
            # A failed refresh already ended the lifecycle; only the material is dropped
            session.access_token = ""
            session.refresh_token = None
            return
        session.transition(AuthState.REVOKED)
        session.access_token = ""
        session.refresh_token = None
        if negotiation and negotiation.revocation_url and negotiation.token_client and token:
            await negotiation.token_client.revoke(negotiation.revocation_url, token)
        logger.info("atp.auth.revoked", host=self.host, scheme=session.scheme.value)
