"""Protocol-wide constants for the ATP runtime."""

ATP_PROTOCOL_VERSION = "1.0"
"""Protocol version sent in the X-ATP-Version header."""

RUNTIME_VERSION = "0.1.0"

# Discovery
WELL_KNOWN_MANIFEST_PATH = "/.well-known/agent.json"
"""Standard location of a host's manifest (RFC 8615 well-known URI)."""

FORWARD_POINTER_REL = "agent-manifest"
"""Link relation a site root uses to point at a manifest hosted elsewhere."""

DEFAULT_MANIFEST_TTL = 300.0
"""Freshness lifetime in seconds when the server declares none."""

DEFAULT_DISCOVERY_ATTEMPTS = 3

# Dispatch headers
HEADER_AGENT_NAME = "X-Agent-Name"
HEADER_AGENT_IDENTITY = "X-Agent-Identity"
HEADER_PROTOCOL_VERSION = "X-ATP-Version"
USER_AGENT = f"atp-runtime/{RUNTIME_VERSION}"

# Rate-limit signalling headers, checked in order
HEADER_RETRY_AFTER = "Retry-After"
RATE_LIMIT_REMAINING_HEADERS = ("X-RateLimit-Remaining", "RateLimit-Remaining")
RATE_LIMIT_RESET_HEADERS = ("X-RateLimit-Reset", "RateLimit-Reset")

# Retry and backoff
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 0.5
"""Base delay in seconds; attempt n waits base_delay * 2**n (+ jitter)."""

DEFAULT_MAX_DELAY = 30.0
DEFAULT_TIMEOUT = 30.0

# Auth
TOKEN_REFRESH_BUFFER_SECONDS = 30
"""A token this close to expiry is treated as expired."""

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

# Workflows
WORKFLOW_END = "$end"
"""Reserved branch target that completes a workflow run."""

# Schema references
SCHEMA_REF_PREFIX = "#/schemas/"

SEMVER_PATTERN = (
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)
"""Semantic Versioning 2.0.0 (semver.org) version string."""
