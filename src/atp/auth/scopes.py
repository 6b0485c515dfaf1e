"""Scope vocabulary helpers."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from atp.errors import ScopeError
from atp.models.manifest import Capability
from atp.models.types import Scope


def parse_scope_string(value: Any) -> frozenset[Scope]:
    """Parse an OAuth2 ``scope`` value (space-separated string or list)."""
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset(part for part in value.split() if part)
    if isinstance(value, (list, tuple, set, frozenset)):
        return frozenset(str(part) for part in value if part)
    return frozenset()


def format_scope_string(scopes: Iterable[Scope]) -> str:
    return " ".join(sorted(set(scopes)))


def resolve_granted_scopes(
    requested: Iterable[Scope] | None,
    declared: Iterable[Scope],
    token_scope: Any = None,
) -> frozenset[Scope]:
    """Work out which scopes a session actually holds.

    A ``scope`` returned by the token endpoint is authoritative. Otherwise
    the requested scopes are granted, or every declared scope when the
    caller requested none.

    Example:
        >>> sorted(resolve_granted_scopes(None, {"read:products", "write:cart"}))
        ['read:products', 'write:cart']
        >>> sorted(resolve_granted_scopes(["read:products"], {"read:products"}, "read:products"))
        ['read:products']
    """
    granted = parse_scope_string(token_scope)
    if granted:
        return granted
    if requested is not None:
        requested_set = frozenset(requested)
        if requested_set:
            return requested_set
    return frozenset(declared)


def enforce_scopes(capability: Capability, granted: frozenset[Scope]) -> None:
    """Raise ScopeError unless ``granted`` covers the capability's required scopes.

    Raises:
        ScopeError: Listing every missing scope
    """
    missing = capability.scope_set - granted
    if missing:
        raise ScopeError(capability_id=capability.id, missing=set(missing))
