"""OAuth2 token endpoint operations.

Wraps Authlib's AsyncOAuth2Client for the flows a manifest may declare:

- client_credentials: machine-to-machine token exchange
- authorization_code: PKCE (S256) authorization URL plus code exchange
- refresh_token: token renewal at the declared refresh endpoint
- revocation: RFC 7009 token revocation
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx
from authlib.common.security import generate_token
from authlib.integrations.base_client.errors import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client

from atp.auth.scopes import format_scope_string, parse_scope_string
from atp.errors import AuthError, AuthUnauthorizedError
from atp.models.constants import DEFAULT_TOKEN_LIFETIME_SECONDS
from atp.models.enums import AuthSchemeKind
from atp.models.types import Scope
from atp.observability import get_logger
from atp.utils.sanitization import sanitize_url

logger = get_logger(__name__)

DEFAULT_TOKEN_ENDPOINT_TIMEOUT = 10.0
PKCE_VERIFIER_LENGTH = 64


@dataclass(frozen=True)
class TokenSet:
    """Token material returned by a token endpoint.

    Attributes:
        access_token: The opaque access token string
        token_type: Authorization header prefix, typically "Bearer"
        expires_at: Unix timestamp when the token expires
        refresh_token: Refresh token, if issued
        scopes: Scopes the endpoint reported as granted (may be empty)
    """

    access_token: str
    token_type: str = "Bearer"
    expires_at: Optional[float] = None
    refresh_token: Optional[str] = None
    scopes: frozenset[Scope] = frozenset()


def parse_token_response(
    raw_token: dict[str, Any], clock: Callable[[], float] = time.time
) -> TokenSet:
    """Convert a raw token response into a TokenSet.

    Expiry comes from ``expires_in`` measured on ``clock``, else an absolute
    ``expires_at``, else a one-hour default lifetime.

    Raises:
        AuthUnauthorizedError: If the response carries no access token
    """
    access_token = raw_token.get("access_token")
    if not access_token:
        raise AuthUnauthorizedError("Token endpoint response has no access_token")

    if raw_token.get("expires_in") is not None:
        expires_at = clock() + float(raw_token["expires_in"])
    elif raw_token.get("expires_at") is not None:
        expires_at = float(raw_token["expires_at"])
    else:
        expires_at = clock() + DEFAULT_TOKEN_LIFETIME_SECONDS

    return TokenSet(
        access_token=str(access_token),
        token_type=str(raw_token.get("token_type") or "Bearer"),
        expires_at=expires_at,
        refresh_token=raw_token.get("refresh_token"),
        scopes=parse_scope_string(raw_token.get("scope")),
    )


@dataclass(frozen=True)
class PendingAuthorization:
    """A suspended authorization-code negotiation.

    Returned by AuthManager.acquire_session for the authorization-code flow.
    The hosting application sends the user to ``authorization_url`` and
    resumes with AuthManager.complete_authorization once the redirect
    callback arrives.

    Attributes:
        host: Host being authorized
        authorization_url: URL the human must visit
        state: Anti-CSRF value echoed back on the redirect
        code_verifier: PKCE verifier for the code exchange
        redirect_uri: Redirect URI registered with the provider
        scopes: Scopes requested
    """

    host: str
    authorization_url: str
    state: str
    code_verifier: str = field(repr=False)
    redirect_uri: str
    scopes: frozenset[Scope] = frozenset()
    scheme: AuthSchemeKind = AuthSchemeKind.OAUTH2_AUTHORIZATION_CODE
    created_at: float = field(default_factory=time.time)


class OAuth2TokenClient:
    """Token endpoint client for one OAuth2 registration.

    Example:
        >>> client = OAuth2TokenClient("my-client", "secret")
        >>> tokens = await client.client_credentials(
        ...     "https://auth.example.com/oauth/token", {"read:products"}
        ... )
    """

    def __init__(
        self,
        client_id: str,
        client_secret: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TOKEN_ENDPOINT_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the token client.

        Args:
            client_id: OAuth2 client ID from the provider
            client_secret: Client secret; omit for public (PKCE-only) clients
            transport: Optional httpx transport for testing (e.g. MockTransport)
            timeout: Token endpoint timeout in seconds
            clock: Wall-clock source for expiry computation
        """
        self.client_id = client_id
        self._client_secret = client_secret
        self._transport = transport
        self._timeout = timeout
        self._clock = clock

    def _session(self, **kwargs: Any) -> AsyncOAuth2Client:
        options: dict[str, Any] = {"timeout": httpx.Timeout(self._timeout)}
        if self._transport is not None:
            options["transport"] = self._transport
        if self._client_secret is None:
            options["token_endpoint_auth_method"] = "none"
        options.update(kwargs)
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self._client_secret,
            **options,
        )

    async def _exchange(self, endpoint: str, operation: str, call: Any) -> dict[str, Any]:
        try:
            raw: dict[str, Any] = await call
        except OAuthError as e:
            logger.warning(
                "atp.oauth2.rejected",
                operation=operation,
                token_endpoint=sanitize_url(endpoint),
                error=e.error,
            )
            raise AuthUnauthorizedError(
                f"Token endpoint rejected {operation}: {e.error}",
                details={"error": e.error, "description": e.description},
            ) from e
        except httpx.HTTPError as e:
            raise AuthError(
                code="atp:auth/token_endpoint",
                message=f"Token endpoint unreachable during {operation}: {e}",
                details={"endpoint": sanitize_url(endpoint)},
            ) from e
        return dict(raw)

    async def client_credentials(self, token_url: str, scopes: set[Scope] | frozenset[Scope]) -> TokenSet:
        """Obtain a token with the client_credentials grant."""
        async with self._session(scope=format_scope_string(scopes) or None) as client:
            raw = await self._exchange(
                token_url,
                "client_credentials",
                client.fetch_token(url=token_url, grant_type="client_credentials"),
            )
        tokens = parse_token_response(raw, self._clock)
        logger.info(
            "atp.oauth2.token_acquired",
            grant_type="client_credentials",
            token_endpoint=sanitize_url(token_url),
            expires_in=round((tokens.expires_at or 0) - self._clock()),
        )
        return tokens

    def authorization_url(
        self,
        authorization_endpoint: str,
        redirect_uri: str,
        scopes: set[Scope] | frozenset[Scope],
    ) -> tuple[str, str, str]:
        """Build a PKCE authorization URL.

        Returns:
            ``(url, state, code_verifier)``
        """
        code_verifier = generate_token(PKCE_VERIFIER_LENGTH)
        client = self._session(
            scope=format_scope_string(scopes) or None,
            redirect_uri=redirect_uri,
            code_challenge_method="S256",
        )
        url, state = client.create_authorization_url(
            authorization_endpoint, code_verifier=code_verifier
        )
        return url, state, code_verifier

    async def exchange_code(
        self,
        token_url: str,
        code: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> TokenSet:
        """Exchange an authorization code for tokens."""
        async with self._session(redirect_uri=redirect_uri) as client:
            raw = await self._exchange(
                token_url,
                "authorization_code",
                client.fetch_token(
                    url=token_url,
                    grant_type="authorization_code",
                    code=code,
                    code_verifier=code_verifier,
                ),
            )
        return parse_token_response(raw, self._clock)

    async def refresh(
        self,
        refresh_url: str,
        refresh_token: str,
        scopes: set[Scope] | frozenset[Scope] | None = None,
    ) -> TokenSet:
        """Renew a token with the refresh_token grant."""
        async with self._session(scope=format_scope_string(scopes or ()) or None) as client:
            raw = await self._exchange(
                refresh_url,
                "refresh_token",
                client.refresh_token(url=refresh_url, refresh_token=refresh_token),
            )
        return parse_token_response(raw, self._clock)

    async def revoke(self, revocation_url: str, token: str) -> None:
        """Revoke a token (RFC 7009). Failures are logged, not raised."""
        async with self._session() as client:
            try:
                response = await client.revoke_token(
                    revocation_url, token=token, token_type_hint="access_token"
                )
            except httpx.HTTPError as e:
                logger.warning(
                    "atp.oauth2.revocation_failed",
                    revocation_endpoint=sanitize_url(revocation_url),
                    error=str(e),
                )
                return
        if response.status_code >= 400:
            logger.warning(
                "atp.oauth2.revocation_failed",
                revocation_endpoint=sanitize_url(revocation_url),
                status_code=response.status_code,
            )
