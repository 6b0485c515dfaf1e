"""Tests for the ATP error taxonomy."""

import pytest

from atp.errors import (
    ATPError,
    AuthError,
    ConfirmationRequiredError,
    DiscoveryError,
    InsecureTransportError,
    InvocationClientFault,
    InvocationError,
    ManifestNotFoundError,
    ManifestValidationError,
    RateLimitedError,
    ScopeError,
    UnsupportedSchemeError,
    ValidationErrorKind,
    ValidationIssue,
    WorkflowCycleError,
    WorkflowError,
)


@pytest.mark.parametrize(
    ("error", "base", "code"),
    [
        (ManifestNotFoundError("h", "https://h/x"), DiscoveryError, "atp:discovery/not_found"),
        (InsecureTransportError("h", "http://h"), DiscoveryError, "atp:discovery/insecure_transport"),
        (UnsupportedSchemeError("kerberos", {"apiKey"}), AuthError, "atp:auth/unsupported_scheme"),
        (InvocationClientFault("c", 404), InvocationError, "atp:invocation/client_fault"),
        (WorkflowCycleError("w", "a", ["a", "a"]), WorkflowError, "atp:workflow/cycle_detected"),
    ],
)
def test_codes_and_hierarchy(error: ATPError, base: type[ATPError], code: str) -> None:
    assert isinstance(error, base)
    assert isinstance(error, ATPError)
    assert error.code == code
    assert error.code.startswith("atp:")


def test_to_dict() -> None:
    error = ScopeError("create-order", {"write:orders", "admin:orders"})
    assert error.to_dict() == {
        "code": "atp:invocation/insufficient_scope",
        "message": "Session lacks scopes ['admin:orders', 'write:orders'] required by 'create-order'",
        "details": {
            "capability_id": "create-order",
            "missing_scopes": ["admin:orders", "write:orders"],
        },
    }


def test_rate_limited_carries_server_body() -> None:
    error = RateLimitedError("shop.example.com", 2.5, {"code": "slow_down", "retryAfter": 2.5})
    assert error.retry_after == 2.5
    assert error.details["error"]["code"] == "slow_down"
    assert "2.50s" in str(error)


def test_confirmation_error_exposes_message() -> None:
    error = ConfirmationRequiredError("create-order", "Charge your card?", "no acknowledgment supplied")
    assert error.details["confirmation_message"] == "Charge your card?"
    assert error.reason == "no acknowledgment supplied"


class TestManifestValidationError:
    def test_summary_is_truncated(self) -> None:
        issues = [
            ValidationIssue(ValidationErrorKind.DUPLICATE_ID, f"capabilities.{i}.id", "dup")
            for i in range(7)
        ]
        error = ManifestValidationError(issues)
        assert "7 problem(s)" in error.message
        assert "(2 more)" in error.message
        assert len(error.details["issues"]) == 7

    def test_kinds(self) -> None:
        error = ManifestValidationError(
            [
                ValidationIssue(ValidationErrorKind.UNKNOWN_STEP, "workflows.0.steps.1", "x"),
                ValidationIssue(ValidationErrorKind.CYCLIC_WORKFLOW, "workflows.0", "y"),
                ValidationIssue(ValidationErrorKind.UNKNOWN_STEP, "workflows.1.steps.0", "z"),
            ]
        )
        assert error.kinds() == {ValidationErrorKind.UNKNOWN_STEP, ValidationErrorKind.CYCLIC_WORKFLOW}
        assert str(error.issues[0]) == "[unknown_step] workflows.0.steps.1: x"
