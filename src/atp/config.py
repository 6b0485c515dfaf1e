"""Runtime configuration.

RuntimeConfig groups the knobs shared by every host context: who the agent
is, how long network operations may take, how transient failures are
retried and how strictly responses are checked. Values come from keyword
arguments or from ``ATP_*`` environment variables via
:meth:`RuntimeConfig.from_env`.
"""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from atp.models.constants import (
    DEFAULT_BASE_DELAY,
    DEFAULT_MANIFEST_TTL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    DEFAULT_TIMEOUT,
)
from atp.models.enums import RateLimitPolicy

ENV_AGENT_NAME = "ATP_AGENT_NAME"
ENV_AGENT_IDENTITY = "ATP_AGENT_IDENTITY"
ENV_TIMEOUT = "ATP_TIMEOUT"
ENV_MAX_RETRIES = "ATP_MAX_RETRIES"
ENV_RATE_LIMIT_POLICY = "ATP_RATE_LIMIT_POLICY"
ENV_STRICT_RESPONSES = "ATP_STRICT_RESPONSES"

DEFAULT_AGENT_NAME = "atp-agent"

_TRUTHY = frozenset({"1", "true", "yes", "on"})


class RetryConfig(BaseModel):
    """Retry policy for transient failures.

    Attributes:
        max_attempts: Total attempts including the first (default: 3)
        base_delay: Base delay in seconds for exponential backoff
        max_delay: Cap on a single backoff delay
        jitter: Whether to add up to 10% random jitter to each delay
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    base_delay: float = Field(default=DEFAULT_BASE_DELAY, ge=0)
    max_delay: float = Field(default=DEFAULT_MAX_DELAY, ge=0)
    jitter: bool = True


class RuntimeConfig(BaseModel):
    """Configuration shared by every host context.

    Attributes:
        agent_name: Value of the X-Agent-Name header
        agent_identity: Verifiable identity (did:web:...) sent when a host requires one
        timeout: Default per-request timeout in seconds
        manifest_ttl: Freshness lifetime used when a host declares none
        retry: Retry policy for discovery and dispatch
        rate_limit_policy: BLOCK waits for budget; FAIL raises RateLimitedError
        strict_responses: Raise ResponseSchemaError instead of recording a diagnostic

    Example:
        >>> config = RuntimeConfig(agent_name="shopper", timeout=10.0)
        >>> config.rate_limit_policy
        <RateLimitPolicy.FAIL: 'fail'>
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    agent_name: str = Field(default=DEFAULT_AGENT_NAME, min_length=1)
    agent_identity: str | None = None
    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    manifest_ttl: float = Field(default=DEFAULT_MANIFEST_TTL, ge=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit_policy: RateLimitPolicy = RateLimitPolicy.FAIL
    strict_responses: bool = False

    @field_validator("rate_limit_policy", mode="before")
    @classmethod
    def normalize_policy(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @classmethod
    def from_env(cls, **overrides: Any) -> RuntimeConfig:
        """Build a config from ``ATP_*`` environment variables.

        Keyword arguments take precedence over the environment.

        Raises:
            pydantic.ValidationError: If a variable holds an invalid value
        """
        values: dict[str, Any] = {}
        if name := os.environ.get(ENV_AGENT_NAME):
            values["agent_name"] = name
        if identity := os.environ.get(ENV_AGENT_IDENTITY):
            values["agent_identity"] = identity
        if timeout := os.environ.get(ENV_TIMEOUT):
            values["timeout"] = timeout
        if retries := os.environ.get(ENV_MAX_RETRIES):
            values["retry"] = RetryConfig(max_attempts=int(retries))
        if policy := os.environ.get(ENV_RATE_LIMIT_POLICY):
            values["rate_limit_policy"] = policy
        strict = os.environ.get(ENV_STRICT_RESPONSES)
        if strict is not None:
            values["strict_responses"] = strict.strip().lower() in _TRUTHY
        values.update(overrides)
        return cls(**values)
