"""Manifest entity models for the Agent Transfer Protocol.

A host publishes one manifest describing:
- Provider: who operates the host
- AuthSpec: negotiable authentication schemes and their scope vocabulary
- RateLimitSpec: the self-declared request budget
- Capability: one invocable action/query, with its Parameters
- Workflow: an ordered, optionally branching composition of capabilities
- PolicySpec: the host's training/inference/attribution/caching stance

Models here check shape only. Cross-references (unique ids, resolvable
``$ref``s, grantable scopes, workflow targets, cycles) are checked by
:mod:`atp.discovery.validator`, which reports every problem at once.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import Field, field_validator

from atp.models.base import ATPBaseModel
from atp.models.constants import HEADER_AGENT_IDENTITY
from atp.models.enums import AuthSchemeKind, HttpMethod, ParameterLocation, ParameterType
from atp.models.types import CapabilityID, JSONSchema, Scope, SemanticVersion, WorkflowID
from atp.models.validators import parse_window_seconds, validate_semver


class Provider(ATPBaseModel):
    """The organization operating the host."""

    name: str = Field(..., min_length=1, description="Provider display name")
    url: str | None = Field(default=None, description="Provider home page")
    contact: str | None = Field(default=None, description="Contact address for agent operators")
    logo: str | None = None


# --------------------------------------------------------------------------- #
# Auth
# --------------------------------------------------------------------------- #


class OAuth2Flow(ATPBaseModel):
    """Endpoints and scope vocabulary shared by OAuth2 flows.

    Attributes:
        token_url: Token endpoint
        refresh_url: Refresh endpoint; absent means sessions cannot be refreshed
        revocation_url: Optional RFC 7009 revocation endpoint
        scopes: Scope name -> human description
    """

    token_url: str = Field(..., min_length=1)
    refresh_url: str | None = None
    revocation_url: str | None = None
    scopes: dict[Scope, str] = Field(default_factory=dict)


class AuthorizationCodeFlow(OAuth2Flow):
    authorization_url: str = Field(..., min_length=1)


class ClientCredentialsFlow(OAuth2Flow):
    pass


class OAuth2Flows(ATPBaseModel):
    authorization_code: AuthorizationCodeFlow | None = None
    client_credentials: ClientCredentialsFlow | None = None


class OAuth2Scheme(ATPBaseModel):
    """OAuth2 with an authorization-code and/or client-credentials flow."""

    type: Literal["oauth2"] = "oauth2"
    flows: OAuth2Flows

    def declared_scopes(self) -> set[Scope]:
        scopes: set[Scope] = set()
        for flow in (self.flows.authorization_code, self.flows.client_credentials):
            if flow is not None:
                scopes.update(flow.scopes)
        return scopes

    def kinds(self) -> set[AuthSchemeKind]:
        kinds: set[AuthSchemeKind] = set()
        if self.flows.authorization_code is not None:
            kinds.add(AuthSchemeKind.OAUTH2_AUTHORIZATION_CODE)
        if self.flows.client_credentials is not None:
            kinds.add(AuthSchemeKind.OAUTH2_CLIENT_CREDENTIALS)
        return kinds


class ApiKeyScheme(ATPBaseModel):
    """Static API key sent in a header or query parameter."""

    type: Literal["apiKey"] = "apiKey"
    name: str = Field(default="X-API-Key", min_length=1, description="Header or query key")
    location: Literal["header", "query"] = Field(default="header", alias="in")
    scopes: list[Scope] = Field(default_factory=list)

    def declared_scopes(self) -> set[Scope]:
        return set(self.scopes)

    def kinds(self) -> set[AuthSchemeKind]:
        return {AuthSchemeKind.API_KEY}


class BearerScheme(ATPBaseModel):
    """Static bearer token issued out of band."""

    type: Literal["bearer"] = "bearer"
    scopes: list[Scope] = Field(default_factory=list)

    def declared_scopes(self) -> set[Scope]:
        return set(self.scopes)

    def kinds(self) -> set[AuthSchemeKind]:
        return {AuthSchemeKind.BEARER}


class DelegatedScheme(ATPBaseModel):
    """Token delegated to the agent by a human principal via a trusted issuer."""

    type: Literal["delegated"] = "delegated"
    issuer: str = Field(..., min_length=1)
    token_url: str | None = None
    refresh_url: str | None = None
    scopes: list[Scope] = Field(default_factory=list)

    def declared_scopes(self) -> set[Scope]:
        return set(self.scopes)

    def kinds(self) -> set[AuthSchemeKind]:
        return {AuthSchemeKind.DELEGATED}


AuthScheme = Annotated[
    Union[OAuth2Scheme, ApiKeyScheme, BearerScheme, DelegatedScheme],
    Field(discriminator="type"),
]


class IdentityRequirement(ATPBaseModel):
    """Whether requests must carry a verifiable agent identity, and where."""

    required: bool = False
    method: str = Field(default="did:web", description="Identity method, e.g. did:web")
    header: str = Field(default=HEADER_AGENT_IDENTITY)


class AuthSpec(ATPBaseModel):
    """Authentication schemes the host accepts.

    Example:
        >>> auth = AuthSpec(schemes=[BearerScheme(scopes=["read:products"])])
        >>> auth.declared_scopes()
        {'read:products'}
    """

    schemes: list[AuthScheme] = Field(default_factory=list)
    identity: IdentityRequirement | None = None

    def declared_scopes(self) -> set[Scope]:
        """Every scope grantable by any declared scheme."""
        scopes: set[Scope] = set()
        for scheme in self.schemes:
            scopes.update(scheme.declared_scopes())
        return scopes

    def kinds(self) -> set[AuthSchemeKind]:
        kinds: set[AuthSchemeKind] = set()
        for scheme in self.schemes:
            kinds.update(scheme.kinds())
        return kinds

    def scheme_for(self, kind: AuthSchemeKind) -> AuthScheme | None:
        """Return the declared scheme that negotiates ``kind``, if any."""
        for scheme in self.schemes:
            if kind in scheme.kinds():
                return scheme
        return None

    @property
    def identity_required(self) -> bool:
        return self.identity is not None and self.identity.required


# --------------------------------------------------------------------------- #
# Rate limits and policies
# --------------------------------------------------------------------------- #


class RateLimitSpec(ATPBaseModel):
    """Self-declared request budget.

    Attributes:
        requests: Requests allowed per window
        window: Window length ("minute", "15m", or seconds)
        burst_limit: Optional ceiling on requests admitted back to back
    """

    requests: int = Field(..., gt=0)
    window: str | int = Field(default="minute")
    burst_limit: int | None = Field(default=None, gt=0)

    @field_validator("window")
    @classmethod
    def validate_window(cls, v: str | int) -> str | int:
        parse_window_seconds(v)
        return v

    @property
    def window_seconds(self) -> float:
        return parse_window_seconds(self.window)


class PolicySpec(ATPBaseModel):
    """The host's stance on how agents may use its content."""

    training: str | None = Field(default=None, description="e.g. 'disallowed'")
    inference: str | None = Field(default=None, description="e.g. 'allowed'")
    attribution: str | None = Field(default=None, description="e.g. 'required'")
    caching: str | None = Field(default=None, description="e.g. 'allowed-24h'")
    notes: str | None = None


# --------------------------------------------------------------------------- #
# Capabilities
# --------------------------------------------------------------------------- #


class Parameter(ATPBaseModel):
    """One declared argument of a capability.

    Attributes:
        name: Argument name
        type: Type tag (string, integer, number, boolean, array, object)
        required: Whether callers must supply it
        default: Value applied when omitted
        enum: Allowed values
        format: String format hint (date, date-time, email, uri, uuid)
        minimum / maximum: Inclusive numeric bounds
        pattern: Regular expression a string must match
        location: Explicit placement (path/query/body/header), wire key ``in``
        items: Element type tag for arrays
    """

    name: str = Field(..., min_length=1)
    type: ParameterType
    required: bool = False
    description: str | None = None
    default: Any = None
    enum: list[Any] | None = None
    format: str | None = None
    minimum: int | float | None = None
    maximum: int | float | None = None
    pattern: str | None = None
    location: ParameterLocation | None = Field(default=None, alias="in")
    items: ParameterType | None = None


class Confirmation(ATPBaseModel):
    """Human acknowledgment demanded before each invocation."""

    required: bool = True
    message: str = Field(..., min_length=1)


class Deprecation(ATPBaseModel):
    since: str | None = None
    message: str | None = None
    replaced_by: CapabilityID | None = None


class Capability(ATPBaseModel):
    """One discretely invocable action or query.

    Example:
        >>> cap = Capability(
        ...     id="search-products",
        ...     name="Search products",
        ...     description="Full-text product search",
        ...     endpoint="/api/v1/products/search",
        ...     method="GET",
        ...     parameters=[Parameter(name="q", type="string", required=True)],
        ...     required_scopes=["read:products"],
        ... )
        >>> cap.requires_confirmation
        False
    """

    id: CapabilityID = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    semantic_type: str | None = Field(default=None, description="namespace:type tag")
    endpoint: str = Field(..., min_length=1, description="Absolute or manifest-relative URI")
    method: HttpMethod = HttpMethod.GET
    parameters: list[Parameter] = Field(default_factory=list)
    response: JSONSchema | None = Field(default=None, description="Response schema or $ref")
    required_scopes: list[Scope] = Field(default_factory=list)
    side_effects: bool = False
    confirmation: Confirmation | None = None
    deprecated: Deprecation | None = None

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @property
    def requires_confirmation(self) -> bool:
        """True when every call needs a fresh human acknowledgment."""
        return (
            self.side_effects
            and self.confirmation is not None
            and self.confirmation.required
        )

    @property
    def scope_set(self) -> frozenset[Scope]:
        return frozenset(self.required_scopes)

    def get_parameter(self, name: str) -> Parameter | None:
        for parameter in self.parameters:
            if parameter.name == name:
                return parameter
        return None


# --------------------------------------------------------------------------- #
# Workflows
# --------------------------------------------------------------------------- #


class ConditionalBranch(ATPBaseModel):
    """Branch taken after a step, decided by a condition over its response.

    A ``None`` target aborts the run at that step; the reserved target
    ``"$end"`` completes it.
    """

    condition: str = Field(..., min_length=1)
    on_true: CapabilityID | None = None
    on_false: CapabilityID | None = None


class Workflow(ATPBaseModel):
    """A named, ordered (optionally branching) composition of capabilities."""

    id: WorkflowID = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    steps: list[CapabilityID] = Field(..., min_length=1)
    conditional: dict[CapabilityID, ConditionalBranch] = Field(default_factory=dict)


# --------------------------------------------------------------------------- #
# Manifest
# --------------------------------------------------------------------------- #


class Manifest(ATPBaseModel):
    """A host's capability-and-policy document.

    Capabilities keep declaration order. Instances are immutable and safe to
    share across hosts' invokers and concurrent tasks.

    Attributes:
        name: Host/service display name
        description: What the host offers agents
        version: Semantic version of the manifest
        provider: Operator information
        auth: Accepted authentication schemes
        rate_limit: Self-declared request budget (wire key ``rateLimit``)
        capabilities: Invocable actions, in declaration order
        workflows: Suggested compositions of capabilities
        schemas: Reusable JSON schemas referenced as ``#/schemas/<name>``
        policies: Usage policy stance
    """

    schema_uri: str | None = Field(default=None, alias="$schema")
    name: str = Field(..., min_length=1)
    description: str
    version: SemanticVersion
    provider: Provider
    auth: AuthSpec
    rate_limit: RateLimitSpec | None = None
    capabilities: list[Capability]
    workflows: list[Workflow] = Field(default_factory=list)
    schemas: dict[str, JSONSchema] = Field(default_factory=dict)
    policies: PolicySpec = Field(default_factory=PolicySpec)

    @field_validator("version")
    @classmethod
    def check_semver(cls, v: str) -> str:
        return validate_semver(v)

    def get_capability(self, capability_id: CapabilityID) -> Capability | None:
        for capability in self.capabilities:
            if capability.id == capability_id:
                return capability
        return None

    def get_workflow(self, workflow_id: WorkflowID) -> Workflow | None:
        for workflow in self.workflows:
            if workflow.id == workflow_id:
                return workflow
        return None

    @property
    def capability_ids(self) -> list[CapabilityID]:
        return [capability.id for capability in self.capabilities]

    def to_document(self) -> dict[str, Any]:
        """Encode to the JSON wire format (camelCase keys, unset optionals omitted)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> Manifest:
        """Decode the wire format. Shape checks only; see ManifestValidator."""
        return cls.model_validate(document)
