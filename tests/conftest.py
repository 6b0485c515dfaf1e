"""Shared pytest fixtures for ATP runtime tests.

Fixtures from atp.testing.fixtures (sample_manifest_document, mock_host,
runtime_config) are loaded as a plugin; this module adds a validated
manifest, a controllable clock and a recording sleep.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest

from atp.discovery.validator import ManifestValidator
from atp.models.manifest import Manifest
from atp.observability import reset_metrics
from atp.testing.mocks import json_response

pytest_plugins = ["atp.testing.fixtures"]

TOKEN_PATH = "/oauth/token"


class FakeClock:
    """Manually advanced clock usable as both monotonic and wall time."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Async sleep double: records each delay and advances an optional clock."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._clock is not None:
            self._clock.advance(delay)


def token_response(
    access_token: str = "access-token-1",
    *,
    expires_in: int = 3600,
    refresh_token: str | None = None,
    scope: str | None = None,
) -> Any:
    body: dict[str, Any] = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": expires_in,
    }
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    if scope is not None:
        body["scope"] = scope
    return json_response(200, body)


@pytest.fixture(autouse=True)
def _isolate_metrics() -> Iterator[None]:
    """Every test starts from zeroed counters."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def manifest(sample_manifest_document: dict[str, Any]) -> Manifest:
    return ManifestValidator().validate(sample_manifest_document)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper(clock: FakeClock) -> SleepRecorder:
    return SleepRecorder(clock)
