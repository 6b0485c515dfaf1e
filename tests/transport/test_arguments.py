"""Tests for argument validation and request placement."""

from __future__ import annotations

from typing import Any

import pytest

from atp.errors import ParameterError
from atp.models import Capability, Manifest
from atp.models.enums import ParameterType
from atp.transport.arguments import TypedValue, build_url, route_arguments, validate_arguments


def _capability(manifest: Manifest, capability_id: str) -> Capability:
    capability = manifest.get_capability(capability_id)
    assert capability is not None
    return capability


class TestValidation:
    def test_valid_arguments_are_typed(self, manifest: Manifest) -> None:
        typed = validate_arguments(
            _capability(manifest, "search-products"), {"q": "wireless headphones", "price_max": 100}
        )
        assert typed["q"] == TypedValue(ParameterType.STRING, "wireless headphones")
        assert typed["price_max"] == TypedValue(ParameterType.NUMBER, 100)

    def test_defaults_fill_omitted_parameters(self, manifest: Manifest) -> None:
        typed = validate_arguments(_capability(manifest, "search-products"), {"q": "tv"})
        assert typed["limit"].value == 20
        assert "category" not in typed

    def test_integral_float_is_accepted_as_integer(self, manifest: Manifest) -> None:
        typed = validate_arguments(
            _capability(manifest, "create-order"), {"product_id": "p-1", "quantity": 2.0}
        )
        assert typed["quantity"].value == 2
        assert isinstance(typed["quantity"].value, int)

    def test_every_problem_is_reported(self, manifest: Manifest) -> None:
        with pytest.raises(ParameterError) as exc_info:
            validate_arguments(
                _capability(manifest, "search-products"),
                {"price_max": -1, "category": "garden", "limit": True, "colour": "red"},
            )
        problems = exc_info.value.problems
        assert "unknown parameter 'colour'" in problems
        assert "missing required parameter 'q'" in problems
        assert "parameter 'price_max' must be >= 0" in problems
        assert any("'category' must be one of" in problem for problem in problems)
        assert "parameter 'limit' expects integer, got bool" in problems
        assert exc_info.value.capability_id == "search-products"

    @pytest.mark.parametrize(
        ("date", "valid"), [("2026-03-14", True), ("14/03/2026", False), ("2026-02-30", False)]
    )
    def test_date_format(self, manifest: Manifest, date: str, valid: bool) -> None:
        capability = _capability(manifest, "check-availability")
        if valid:
            assert validate_arguments(capability, {"date": date})["date"].value == date
        else:
            with pytest.raises(ParameterError, match="not a valid date"):
                validate_arguments(capability, {"date": date})

    def test_array_items_are_checked(self) -> None:
        capability = Capability.model_validate(
            {
                "id": "tag",
                "name": "Tag",
                "endpoint": "/tag",
                "parameters": [{"name": "ids", "type": "array", "items": "integer"}],
            }
        )
        with pytest.raises(ParameterError, match=r"'ids\[1\]' expects integer"):
            validate_arguments(capability, {"ids": [1, "two"]})

    def test_pattern_is_enforced(self) -> None:
        capability = Capability.model_validate(
            {
                "id": "sku",
                "name": "SKU",
                "endpoint": "/sku",
                "parameters": [{"name": "sku", "type": "string", "pattern": "^[A-Z]{3}-\\d+$"}],
            }
        )
        assert validate_arguments(capability, {"sku": "ABC-12"})
        with pytest.raises(ParameterError, match="does not match pattern"):
            validate_arguments(capability, {"sku": "abc"})


class TestRouting:
    def test_get_arguments_go_to_query(self, manifest: Manifest) -> None:
        capability = _capability(manifest, "search-products")
        routed = route_arguments(
            capability, validate_arguments(capability, {"q": "tv", "price_max": 99.5})
        )
        assert routed.query == [("q", "tv"), ("price_max", "99.5"), ("limit", "20")]
        assert routed.body == {}

    def test_post_arguments_go_to_body(self, manifest: Manifest) -> None:
        capability = _capability(manifest, "create-order")
        routed = route_arguments(
            capability, validate_arguments(capability, {"product_id": "p-1", "quantity": 2})
        )
        assert routed.body == {"product_id": "p-1", "quantity": 2}
        assert routed.query == []

    def test_placeholders_take_their_parameter(self, manifest: Manifest) -> None:
        capability = _capability(manifest, "get-product")
        routed = route_arguments(capability, validate_arguments(capability, {"product_id": "a/b"}))
        assert routed.path == {"product_id": "a/b"}
        url = build_url("https://shop.example.com", capability.endpoint, routed.path)
        assert url == "https://shop.example.com/api/v1/products/a%2Fb"

    def test_explicit_location_overrides_default(self) -> None:
        capability = Capability.model_validate(
            {
                "id": "upload",
                "name": "Upload",
                "endpoint": "/upload",
                "method": "POST",
                "parameters": [
                    {"name": "X-Request-Id", "type": "string", "in": "header"},
                    {"name": "dry_run", "type": "boolean", "in": "query"},
                    {"name": "tags", "type": "array", "in": "query"},
                    {"name": "payload", "type": "object"},
                ],
            }
        )
        arguments: dict[str, Any] = {
            "X-Request-Id": "r-1",
            "dry_run": True,
            "tags": ["a", "b"],
            "payload": {"k": 1},
        }
        routed = route_arguments(capability, validate_arguments(capability, arguments))
        assert routed.headers == {"X-Request-Id": "r-1"}
        assert routed.query == [("dry_run", "true"), ("tags", "a"), ("tags", "b")]
        assert routed.body == {"payload": {"k": 1}}

    def test_absolute_endpoint_is_kept(self) -> None:
        url = build_url("https://shop.example.com", "https://api.example.com/v2/search", {})
        assert url == "https://api.example.com/v2/search"


class TestTypedValue:
    @pytest.mark.parametrize(
        ("value", "text"),
        [
            (TypedValue(ParameterType.BOOLEAN, False), "false"),
            (TypedValue(ParameterType.INTEGER, 7), "7"),
            (TypedValue(ParameterType.OBJECT, {"a": [1, 2]}), '{"a":[1,2]}'),
        ],
    )
    def test_text_rendering(self, value: TypedValue, text: str) -> None:
        assert value.to_text() == text
