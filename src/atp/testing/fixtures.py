"""Pytest fixtures and sample documents for ATP tests.

Fixtures (use with pytest):
    sample_manifest_document: A complete, valid manifest document (dict).
    mock_host: MockHost serving that manifest at shop.example.com.
    runtime_config: RuntimeConfig with zero backoff for fast retry tests.

Helpers:
    build_manifest_document(): The same sample manifest, for use outside fixtures.
"""

from __future__ import annotations

import copy
from typing import Any

import pytest

from atp.config import RetryConfig, RuntimeConfig
from atp.testing.mocks import MockHost

SAMPLE_HOST = "shop.example.com"

_SAMPLE_MANIFEST: dict[str, Any] = {
    "$schema": "https://atp.dev/schemas/manifest/1.0.json",
    "name": "Example Shop",
    "description": "Catalog search, ordering and in-store appointments",
    "version": "1.2.0",
    "provider": {
        "name": "Example Retail Inc.",
        "url": "https://example.com",
        "contact": "agents@example.com",
    },
    "auth": {
        "schemes": [
            {
                "type": "oauth2",
                "flows": {
                    "clientCredentials": {
                        "tokenUrl": "https://shop.example.com/oauth/token",
                        "revocationUrl": "https://shop.example.com/oauth/revoke",
                        "scopes": {
                            "read:products": "Search and read the catalog",
                            "write:orders": "Place orders",
                            "read:appointments": "Check appointment slots",
                            "write:appointments": "Book appointments",
                        },
                    },
                    "authorizationCode": {
                        "authorizationUrl": "https://shop.example.com/oauth/authorize",
                        "tokenUrl": "https://shop.example.com/oauth/token",
                        "refreshUrl": "https://shop.example.com/oauth/token",
                        "scopes": {
                            "read:products": "Search and read the catalog",
                            "write:orders": "Place orders",
                        },
                    },
                },
            },
            {"type": "apiKey", "name": "X-API-Key", "in": "header", "scopes": ["read:products"]},
        ],
    },
    "rateLimit": {"requests": 60, "window": "minute", "burstLimit": 10},
    "capabilities": [
        {
            "id": "search-products",
            "name": "Search products",
            "description": "Full-text search over the catalog",
            "semanticType": "commerce:search",
            "endpoint": "/api/v1/products/search",
            "method": "GET",
            "parameters": [
                {"name": "q", "type": "string", "required": True},
                {"name": "price_max", "type": "number", "minimum": 0},
                {
                    "name": "category",
                    "type": "string",
                    "enum": ["electronics", "audio", "home"],
                },
                {"name": "limit", "type": "integer", "default": 20, "minimum": 1, "maximum": 100},
            ],
            "response": {
                "type": "object",
                "properties": {
                    "products": {"type": "array", "items": {"$ref": "#/schemas/Product"}},
                    "total": {"type": "integer"},
                },
                "required": ["products"],
            },
            "requiredScopes": ["read:products"],
        },
        {
            "id": "get-product",
            "name": "Get product",
            "endpoint": "/api/v1/products/{product_id}",
            "method": "GET",
            "parameters": [{"name": "product_id", "type": "string", "required": True}],
            "response": {"$ref": "#/schemas/Product"},
            "requiredScopes": ["read:products"],
        },
        {
            "id": "create-order",
            "name": "Create order",
            "description": "Place an order and charge the stored payment method",
            "endpoint": "/api/v1/orders",
            "method": "POST",
            "parameters": [
                {"name": "product_id", "type": "string", "required": True},
                {"name": "quantity", "type": "integer", "required": True, "minimum": 1},
            ],
            "requiredScopes": ["write:orders"],
            "sideEffects": True,
            "confirmation": {
                "required": True,
                "message": "This will place an order and charge your card.",
            },
        },
        {
            "id": "check-availability",
            "name": "Check availability",
            "endpoint": "/api/v1/appointments/availability",
            "method": "GET",
            "parameters": [{"name": "date", "type": "string", "format": "date", "required": True}],
            "response": {
                "type": "object",
                "properties": {
                    "available": {"type": "boolean"},
                    "slots": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["available"],
            },
            "requiredScopes": ["read:appointments"],
        },
        {
            "id": "create-appointment",
            "name": "Create appointment",
            "endpoint": "/api/v1/appointments",
            "method": "POST",
            "parameters": [
                {"name": "date", "type": "string", "format": "date", "required": True},
                {"name": "slot", "type": "string"},
            ],
            "requiredScopes": ["write:appointments"],
            "sideEffects": True,
        },
    ],
    "workflows": [
        {
            "id": "book-appointment",
            "name": "Book an appointment",
            "description": "Check a date and book it when a slot is free",
            "steps": ["check-availability", "create-appointment"],
            "conditional": {
                "check-availability": {
                    "condition": "available == true",
                    "onTrue": "create-appointment",
                    "onFalse": None,
                }
            },
        }
    ],
    "schemas": {
        "Product": {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "name": {"type": "string"},
                "price": {"type": "number"},
            },
            "required": ["id", "name", "price"],
        }
    },
    "policies": {
        "training": "disallowed",
        "inference": "allowed",
        "attribution": "required",
        "caching": "allowed-24h",
    },
}


def build_manifest_document() -> dict[str, Any]:
    """Return a fresh deep copy of the sample manifest document."""
    return copy.deepcopy(_SAMPLE_MANIFEST)


@pytest.fixture
def sample_manifest_document() -> dict[str, Any]:
    """A complete, valid manifest document (fresh copy per test)."""
    return build_manifest_document()


@pytest.fixture
def mock_host(sample_manifest_document: dict[str, Any]) -> MockHost:
    """MockHost serving the sample manifest at shop.example.com."""
    return MockHost(SAMPLE_HOST, manifest=sample_manifest_document)


@pytest.fixture
def runtime_config() -> RuntimeConfig:
    """RuntimeConfig with zero backoff so retry tests run instantly."""
    return RuntimeConfig(
        agent_name="test-agent",
        timeout=5.0,
        retry=RetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=False),
    )
