"""ATP data model.

Frozen pydantic models for the manifest document plus the enums, constants
and type aliases shared by the runtime components.
"""

# Base models
from atp.models.base import ATPBaseModel

# Constants
from atp.models.constants import (
    ATP_PROTOCOL_VERSION,
    RUNTIME_VERSION,
    WELL_KNOWN_MANIFEST_PATH,
    WORKFLOW_END,
)

# Enums
from atp.models.enums import (
    AuthSchemeKind,
    AuthState,
    HttpMethod,
    InvocationOutcome,
    ParameterLocation,
    ParameterType,
    RateLimitPolicy,
    WorkflowStatus,
)

# Type aliases
from atp.models.types import (
    URI,
    AgentIdentity,
    CapabilityID,
    JSONSchema,
    Scope,
    SemanticVersion,
    WorkflowID,
)

# Manifest entities
from atp.models.manifest import (
    ApiKeyScheme,
    AuthorizationCodeFlow,
    AuthScheme,
    AuthSpec,
    BearerScheme,
    Capability,
    ClientCredentialsFlow,
    ConditionalBranch,
    Confirmation,
    DelegatedScheme,
    Deprecation,
    IdentityRequirement,
    Manifest,
    OAuth2Flows,
    OAuth2Scheme,
    Parameter,
    PolicySpec,
    Provider,
    RateLimitSpec,
    Workflow,
)

__all__ = [
    # Base
    "ATPBaseModel",
    # Constants
    "ATP_PROTOCOL_VERSION",
    "RUNTIME_VERSION",
    "WELL_KNOWN_MANIFEST_PATH",
    "WORKFLOW_END",
    # Enums
    "AuthSchemeKind",
    "AuthState",
    "HttpMethod",
    "InvocationOutcome",
    "ParameterLocation",
    "ParameterType",
    "RateLimitPolicy",
    "WorkflowStatus",
    # Types
    "AgentIdentity",
    "CapabilityID",
    "JSONSchema",
    "Scope",
    "SemanticVersion",
    "URI",
    "WorkflowID",
    # Entities
    "ApiKeyScheme",
    "AuthScheme",
    "AuthSpec",
    "AuthorizationCodeFlow",
    "BearerScheme",
    "Capability",
    "ClientCredentialsFlow",
    "ConditionalBranch",
    "Confirmation",
    "DelegatedScheme",
    "Deprecation",
    "IdentityRequirement",
    "Manifest",
    "OAuth2Flows",
    "OAuth2Scheme",
    "Parameter",
    "PolicySpec",
    "Provider",
    "RateLimitSpec",
    "Workflow",
]
