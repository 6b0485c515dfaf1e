"""Type aliases documenting the meaning of string-typed fields."""

from typing import Any, TypeAlias

CapabilityID: TypeAlias = str
"""Capability identifier, unique within a manifest (e.g. 'search-products')"""

WorkflowID: TypeAlias = str

Scope: TypeAlias = str
"""Permission name (e.g. 'read:products')"""

SemanticVersion: TypeAlias = str
"""Semantic version string (e.g. '1.2.0')"""

URI: TypeAlias = str

AgentIdentity: TypeAlias = str
"""Verifiable agent identity (e.g. 'did:web:agents.example.com')"""

JSONSchema: TypeAlias = dict[str, Any]
"""A JSON Schema document or fragment"""
