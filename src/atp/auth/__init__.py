"""Authentication negotiation, sessions and scope enforcement."""

from atp.auth.manager import AuthManager, Credentials
from atp.auth.oauth2 import OAuth2TokenClient, PendingAuthorization, TokenSet
from atp.auth.scopes import enforce_scopes, resolve_granted_scopes
from atp.auth.session import VALID_TRANSITIONS, Session, can_transition

__all__ = [
    "AuthManager",
    "Credentials",
    "OAuth2TokenClient",
    "PendingAuthorization",
    "Session",
    "TokenSet",
    "VALID_TRANSITIONS",
    "can_transition",
    "enforce_scopes",
    "resolve_granted_scopes",
]
