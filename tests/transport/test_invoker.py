"""Tests for CapabilityInvoker: gates, dispatch, response handling and audit."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest
import structlog

from atp.audit import InMemoryAuditLog
from atp.auth import AuthManager, Credentials, Session
from atp.config import RuntimeConfig
from atp.discovery.validator import ManifestValidator
from atp.errors import (
    ATPError,
    AuthUnauthorizedError,
    ConfirmationRequiredError,
    IdentityRequiredError,
    InvocationClientFault,
    InvocationNetworkError,
    InvocationServerError,
    InvocationTimeoutError,
    ParameterError,
    RateLimitedError,
    ResponseSchemaError,
    ScopeError,
    UnrefreshableError,
)
from atp.models import Manifest
from atp.models.enums import InvocationOutcome, RateLimitPolicy
from atp.observability import get_metrics
from atp.observability.logging import REDACTED_PLACEHOLDER
from atp.testing import MockHost, error_response, json_response
from atp.transport import CapabilityInvoker, ConfirmationToken, RateLimiter, classify_error

SEARCH_PATH = "/api/v1/products/search"
ORDERS_PATH = "/api/v1/orders"
TOKEN_PATH = "/oauth/token"

PRODUCTS = {
    "products": [{"id": "p-1", "name": "Wireless headphones", "price": 89.99}],
    "total": 1,
}


@pytest.fixture
async def http_client(mock_host: MockHost) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=mock_host.transport) as client:
        yield client


@pytest.fixture
def audit() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def limiter(manifest: Manifest) -> RateLimiter:
    limiter = RateLimiter()
    limiter.register("shop.example.com", manifest.rate_limit)
    return limiter


@pytest.fixture
def auth(manifest: Manifest, mock_host: MockHost) -> AuthManager:
    return AuthManager(mock_host.host, manifest.auth, transport=mock_host.transport)


def _build_invoker(
    manifest: Manifest,
    auth: AuthManager,
    limiter: RateLimiter,
    http_client: httpx.AsyncClient,
    audit: InMemoryAuditLog,
    config: RuntimeConfig,
    sleeper: Any,
) -> CapabilityInvoker:
    return CapabilityInvoker(
        "shop.example.com",
        "https://shop.example.com",
        manifest,
        auth,
        limiter,
        http_client,
        audit=audit,
        config=config,
        sleep=sleeper,
    )


@pytest.fixture
def invoker(
    manifest: Manifest,
    auth: AuthManager,
    limiter: RateLimiter,
    http_client: httpx.AsyncClient,
    audit: InMemoryAuditLog,
    runtime_config: RuntimeConfig,
    sleeper: Any,
) -> CapabilityInvoker:
    return _build_invoker(manifest, auth, limiter, http_client, audit, runtime_config, sleeper)


@pytest.fixture
async def api_key_session(auth: AuthManager) -> Session:
    session = await auth.acquire_session("apiKey", Credentials(api_key="key-123"))
    assert isinstance(session, Session)
    return session


@pytest.fixture
async def oauth_session(auth: AuthManager, mock_host: MockHost) -> Session:
    mock_host.add_route(
        "POST",
        TOKEN_PATH,
        json_response(200, {"access_token": "cc-1", "token_type": "Bearer", "expires_in": 3600}),
        json_response(200, {"access_token": "cc-2", "token_type": "Bearer", "expires_in": 3600}),
    )
    session = await auth.acquire_session(
        "oauth2-clientCredentials", Credentials(client_id="agent", client_secret="s3cret")
    )
    assert isinstance(session, Session)
    return session


def _only_record(audit: InMemoryAuditLog) -> Any:
    records = audit.records()
    assert len(records) == 1
    return records[0]


class TestSearchEndToEnd:
    async def test_search_products_with_api_key(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        api_key_session: Session,
        audit: InMemoryAuditLog,
    ) -> None:
        mock_host.add_route("GET", SEARCH_PATH, json_response(200, PRODUCTS))

        result = await invoker.invoke(
            "search-products", {"q": "wireless headphones", "price_max": 100}, api_key_session
        )

        calls = mock_host.capability_calls()
        assert len(calls) == 1
        request = calls[0]
        assert request.method == "GET"
        assert request.url.path == SEARCH_PATH
        assert request.url.params["q"] == "wireless headphones"
        assert request.url.params["price_max"] == "100"
        assert request.headers["X-API-Key"] == "key-123"
        assert request.headers["X-Agent-Name"] == "test-agent"
        assert request.headers["X-ATP-Version"] == "1.0"
        assert request.content == b""

        assert result.status_code == 200
        assert result.body == PRODUCTS
        assert result.schema_valid
        assert result.attempts == 1

        record = _only_record(audit)
        assert record.outcome is InvocationOutcome.SUCCESS
        assert record.agent_identity == "test-agent"
        assert record.status_code == 200
        assert get_metrics().get_counter(
            "atp_invocations_total", {"capability": "search-products", "outcome": "success"}
        ) == 1

    async def test_post_sends_json_body(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        oauth_session: Session,
        manifest: Manifest,
    ) -> None:
        mock_host.add_route("POST", ORDERS_PATH, json_response(201, {"orderId": "o-1"}))
        capability = manifest.get_capability("create-order")
        assert capability is not None
        token = ConfirmationToken.acknowledge(capability)

        result = await invoker.invoke(
            capability, {"product_id": "p-1", "quantity": 2}, oauth_session, confirmation=token
        )

        request = mock_host.calls("POST", ORDERS_PATH)[0]
        assert request.headers["Authorization"] == "Bearer cc-1"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {
            "product_id": "p-1",
            "quantity": 2,
        }
        assert result.body == {"orderId": "o-1"}
        assert token.consumed

    async def test_no_content_body_is_none(
        self, invoker: CapabilityInvoker, mock_host: MockHost, api_key_session: Session
    ) -> None:
        mock_host.add_route("GET", "/api/v1/products/{product_id}", httpx.Response(204))
        result = await invoker.invoke("get-product", {"product_id": "p-1"}, api_key_session)
        assert result.body is None

    async def test_unknown_capability(
        self, invoker: CapabilityInvoker, api_key_session: Session, audit: InMemoryAuditLog
    ) -> None:
        with pytest.raises(ATPError) as exc_info:
            await invoker.invoke("teleport", {}, api_key_session)
        assert exc_info.value.code == "atp:invocation/unknown_capability"
        assert _only_record(audit).outcome is InvocationOutcome.ERROR


class TestGates:
    async def test_missing_scope_sends_nothing(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        api_key_session: Session,
        audit: InMemoryAuditLog,
    ) -> None:
        with pytest.raises(ScopeError) as exc_info:
            await invoker.invoke(
                "create-order", {"product_id": "p-1", "quantity": 1}, api_key_session
            )
        assert exc_info.value.missing == {"write:orders"}
        assert mock_host.capability_calls() == []

        record = _only_record(audit)
        assert record.outcome is InvocationOutcome.SCOPE_DENIED
        assert record.attempts == 0
        assert record.error_code == "atp:invocation/insufficient_scope"

    async def test_invalid_arguments_send_nothing(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        api_key_session: Session,
        audit: InMemoryAuditLog,
    ) -> None:
        with pytest.raises(ParameterError):
            await invoker.invoke("search-products", {"price_max": "cheap"}, api_key_session)
        assert mock_host.capability_calls() == []
        assert _only_record(audit).outcome is InvocationOutcome.PARAMETER_ERROR

    async def test_confirmation_is_required(
        self, invoker: CapabilityInvoker, mock_host: MockHost, oauth_session: Session
    ) -> None:
        with pytest.raises(ConfirmationRequiredError) as exc_info:
            await invoker.invoke(
                "create-order", {"product_id": "p-1", "quantity": 1}, oauth_session
            )
        assert exc_info.value.confirmation_message == (
            "This will place an order and charge your card."
        )
        assert mock_host.calls("POST", ORDERS_PATH) == []

    async def test_confirmation_token_is_single_use(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        oauth_session: Session,
        manifest: Manifest,
    ) -> None:
        mock_host.add_route("POST", ORDERS_PATH, json_response(201, {"orderId": "o-1"}))
        capability = manifest.get_capability("create-order")
        assert capability is not None
        token = ConfirmationToken.acknowledge(capability)
        args = {"product_id": "p-1", "quantity": 1}

        await invoker.invoke(capability, args, oauth_session, confirmation=token)
        with pytest.raises(ConfirmationRequiredError, match="already used"):
            await invoker.invoke(capability, args, oauth_session, confirmation=token)
        assert mock_host.call_count("POST", ORDERS_PATH) == 1

    async def test_token_for_other_message_is_rejected(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        oauth_session: Session,
        manifest: Manifest,
    ) -> None:
        capability = manifest.get_capability("create-order")
        assert capability is not None
        token = ConfirmationToken.acknowledge(capability, "Buy something?")
        with pytest.raises(ConfirmationRequiredError, match="different confirmation message"):
            await invoker.invoke(
                capability, {"product_id": "p-1", "quantity": 1}, oauth_session, confirmation=token
            )
        assert mock_host.calls("POST", ORDERS_PATH) == []

    async def test_token_for_other_capability_is_rejected(
        self, invoker: CapabilityInvoker, oauth_session: Session, manifest: Manifest
    ) -> None:
        search = manifest.get_capability("search-products")
        assert search is not None
        token = ConfirmationToken.acknowledge(search)
        with pytest.raises(ConfirmationRequiredError, match="another capability"):
            await invoker.invoke(
                "create-order",
                {"product_id": "p-1", "quantity": 1},
                oauth_session,
                confirmation=token,
            )
        assert not token.consumed

    async def test_side_effects_without_confirmation_block_need_no_token(
        self, invoker: CapabilityInvoker, mock_host: MockHost, oauth_session: Session
    ) -> None:
        mock_host.add_route("POST", "/api/v1/appointments", json_response(201, {"id": "a-1"}))
        result = await invoker.invoke("create-appointment", {"date": "2026-03-14"}, oauth_session)
        assert result.status_code == 201

    async def test_missing_identity_fails_before_any_request(
        self,
        sample_manifest_document: dict[str, Any],
        limiter: RateLimiter,
        http_client: httpx.AsyncClient,
        audit: InMemoryAuditLog,
        runtime_config: RuntimeConfig,
        sleeper: Any,
        mock_host: MockHost,
    ) -> None:
        sample_manifest_document["auth"]["identity"] = {"required": True, "method": "did:web"}
        identity_manifest = ManifestValidator().validate(sample_manifest_document)
        manager = AuthManager(
            mock_host.host, identity_manifest.auth, transport=mock_host.transport
        )
        mock_host.add_route(
            "POST",
            TOKEN_PATH,
            json_response(200, {"access_token": "cc-1", "token_type": "Bearer", "expires_in": 3600}),
        )
        session = await manager.acquire_session(
            "oauth2-clientCredentials", Credentials(client_id="agent", client_secret="s3cret")
        )
        assert isinstance(session, Session)
        session.mark_expired()
        invoker = _build_invoker(
            identity_manifest, manager, limiter, http_client, audit, runtime_config, sleeper
        )
        requests_before = len(mock_host.requests)
        tokens_before = limiter.state("shop.example.com").tokens

        with pytest.raises(IdentityRequiredError):
            await invoker.invoke("search-products", {"q": "tv"}, session)

        assert len(mock_host.requests) == requests_before
        assert limiter.state("shop.example.com").tokens == pytest.approx(tokens_before, abs=0.01)
        record = _only_record(audit)
        assert record.outcome is InvocationOutcome.AUTH_FAILED
        assert record.attempts == 0


class TestRateLimiting:
    async def test_budget_exhaustion_fails_fast(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        api_key_session: Session,
        limiter: RateLimiter,
        audit: InMemoryAuditLog,
    ) -> None:
        mock_host.add_route("GET", SEARCH_PATH, json_response(200, PRODUCTS))
        limiter.state("shop.example.com").tokens = 0.0
        limiter.state("shop.example.com").rate = 0.0

        with pytest.raises(RateLimitedError):
            await invoker.invoke("search-products", {"q": "tv"}, api_key_session)
        assert mock_host.capability_calls() == []
        assert _only_record(audit).outcome is InvocationOutcome.RATE_LIMITED

    async def test_server_429_blocks_host(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        api_key_session: Session,
        limiter: RateLimiter,
    ) -> None:
        mock_host.add_route(
            "GET", SEARCH_PATH, error_response(429, "rate_limited", "slow down", retry_after=5)
        )
        with pytest.raises(RateLimitedError) as exc_info:
            await invoker.invoke("search-products", {"q": "tv"}, api_key_session)
        assert exc_info.value.retry_after == 5.0
        assert exc_info.value.error_body["code"] == "rate_limited"

        with pytest.raises(RateLimitedError) as follow_up:
            await invoker.invoke("search-products", {"q": "tv"}, api_key_session)
        assert follow_up.value.retry_after == pytest.approx(5.0, abs=0.5)
        assert len(mock_host.capability_calls()) == 1

        decision = limiter.try_acquire("shop.example.com")
        assert not decision.granted

    async def test_retry_after_header_wins(
        self, invoker: CapabilityInvoker, mock_host: MockHost, api_key_session: Session
    ) -> None:
        mock_host.add_route(
            "GET",
            SEARCH_PATH,
            error_response(429, "rate_limited", retry_after=60, headers={"Retry-After": "2"}),
        )
        with pytest.raises(RateLimitedError) as exc_info:
            await invoker.invoke("search-products", {"q": "tv"}, api_key_session)
        assert exc_info.value.retry_after == 2.0

    async def test_block_policy_waits_for_budget(
        self,
        manifest: Manifest,
        auth: AuthManager,
        http_client: httpx.AsyncClient,
        audit: InMemoryAuditLog,
        runtime_config: RuntimeConfig,
        mock_host: MockHost,
        api_key_session: Session,
    ) -> None:
        delays: list[float] = []
        now = [0.0]

        async def sleep(delay: float) -> None:
            delays.append(delay)
            now[0] += delay

        limiter = RateLimiter(clock=lambda: now[0], sleep=sleep)
        limiter.register("shop.example.com", manifest.rate_limit)
        limiter.on_rate_limited("shop.example.com", 3.0)
        invoker = _build_invoker(
            manifest, auth, limiter, http_client, audit, runtime_config, sleep
        )
        mock_host.add_route("GET", SEARCH_PATH, json_response(200, PRODUCTS))

        result = await invoker.invoke(
            "search-products",
            {"q": "tv"},
            api_key_session,
            rate_limit_policy=RateLimitPolicy.BLOCK,
        )
        assert result.status_code == 200
        assert delays == [3.0]


class TestResponses:
    async def test_server_errors_are_retried(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        api_key_session: Session,
        sleeper: Any,
    ) -> None:
        mock_host.add_route(
            "GET",
            SEARCH_PATH,
            error_response(503, "unavailable"),
            json_response(200, PRODUCTS),
        )
        result = await invoker.invoke("search-products", {"q": "tv"}, api_key_session)
        assert result.attempts == 2
        assert len(sleeper.delays) == 1
        assert get_metrics().get_counter(
            "atp_invocation_retries_total",
            {"capability": "search-products", "reason": "server_error"},
        ) == 1

    async def test_persistent_server_error(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        api_key_session: Session,
        audit: InMemoryAuditLog,
    ) -> None:
        mock_host.add_route("GET", SEARCH_PATH, error_response(500, "boom", "kaput"))
        with pytest.raises(InvocationServerError) as exc_info:
            await invoker.invoke("search-products", {"q": "tv"}, api_key_session)
        assert exc_info.value.attempts == 3
        assert exc_info.value.error_body == {"code": "boom", "message": "kaput"}
        record = _only_record(audit)
        assert record.outcome is InvocationOutcome.SERVER_ERROR
        assert record.attempts == 3
        assert record.status_code == 500

    async def test_client_fault_is_not_retried(
        self, invoker: CapabilityInvoker, mock_host: MockHost, api_key_session: Session
    ) -> None:
        mock_host.add_route(
            "GET",
            SEARCH_PATH,
            error_response(422, "invalid_query", details={"field": "q"}),
        )
        with pytest.raises(InvocationClientFault) as exc_info:
            await invoker.invoke("search-products", {"q": "tv"}, api_key_session)
        assert exc_info.value.status_code == 422
        assert exc_info.value.error_body["details"] == {"field": "q"}
        assert len(mock_host.capability_calls()) == 1

    async def test_failure_log_redacts_error_body(
        self, invoker: CapabilityInvoker, mock_host: MockHost, api_key_session: Session
    ) -> None:
        mock_host.add_route(
            "GET",
            SEARCH_PATH,
            error_response(400, "bad_request", details={"access_token": "leaked", "field": "q"}),
        )
        with structlog.testing.capture_logs() as captured:
            with pytest.raises(InvocationClientFault) as exc_info:
                await invoker.invoke("search-products", {"q": "tv"}, api_key_session)

        assert exc_info.value.error_body["details"]["access_token"] == "leaked"
        failures = [event for event in captured if event["event"] == "atp.invoker.failed"]
        assert len(failures) == 1
        assert failures[0]["status_code"] == 400
        assert failures[0]["error"]["details"] == {
            "access_token": REDACTED_PLACEHOLDER,
            "field": "q",
        }

    async def test_connect_errors_are_retried(
        self, invoker: CapabilityInvoker, mock_host: MockHost, api_key_session: Session
    ) -> None:
        mock_host.add_route(
            "GET",
            SEARCH_PATH,
            httpx.ConnectError("connection refused"),
            json_response(200, PRODUCTS),
        )
        result = await invoker.invoke("search-products", {"q": "tv"}, api_key_session)
        assert result.attempts == 2

    async def test_network_failure_after_retries(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        api_key_session: Session,
        audit: InMemoryAuditLog,
    ) -> None:
        mock_host.add_route("GET", SEARCH_PATH, httpx.ConnectError("connection refused"))
        with pytest.raises(InvocationNetworkError) as exc_info:
            await invoker.invoke("search-products", {"q": "tv"}, api_key_session)
        assert exc_info.value.attempts == 3
        assert _only_record(audit).outcome is InvocationOutcome.NETWORK_ERROR

    async def test_read_timeout_is_not_retried(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        api_key_session: Session,
        audit: InMemoryAuditLog,
    ) -> None:
        mock_host.add_route("GET", SEARCH_PATH, httpx.ReadTimeout("read timed out"))
        with pytest.raises(InvocationTimeoutError) as exc_info:
            await invoker.invoke("search-products", {"q": "tv"}, api_key_session, timeout=1.5)
        assert exc_info.value.timeout == 1.5
        assert len(mock_host.capability_calls()) == 1
        assert _only_record(audit).outcome is InvocationOutcome.TIMEOUT

    async def test_schema_mismatch_is_a_diagnostic(
        self, invoker: CapabilityInvoker, mock_host: MockHost, api_key_session: Session
    ) -> None:
        mock_host.add_route(
            "GET", SEARCH_PATH, json_response(200, {"products": [{"id": "p-1", "name": "X"}]})
        )
        result = await invoker.invoke("search-products", {"q": "tv"}, api_key_session)
        assert not result.schema_valid
        assert result.diagnostics == ("products/0: 'price' is a required property",)

    async def test_strict_mode_raises_on_mismatch(
        self,
        manifest: Manifest,
        auth: AuthManager,
        limiter: RateLimiter,
        http_client: httpx.AsyncClient,
        audit: InMemoryAuditLog,
        runtime_config: RuntimeConfig,
        sleeper: Any,
        mock_host: MockHost,
        api_key_session: Session,
    ) -> None:
        strict = runtime_config.model_copy(update={"strict_responses": True})
        invoker = _build_invoker(manifest, auth, limiter, http_client, audit, strict, sleeper)
        mock_host.add_route("GET", SEARCH_PATH, json_response(200, {"total": "many"}))
        with pytest.raises(ResponseSchemaError) as exc_info:
            await invoker.invoke("search-products", {"q": "tv"}, api_key_session)
        assert len(exc_info.value.problems) == 2
        assert _only_record(audit).outcome is InvocationOutcome.SCHEMA_MISMATCH


class TestAuthRetry:
    async def test_401_refreshes_once_and_retries(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        oauth_session: Session,
    ) -> None:
        mock_host.add_route(
            "GET",
            SEARCH_PATH,
            error_response(401, "token_expired"),
            json_response(200, PRODUCTS),
        )
        result = await invoker.invoke("search-products", {"q": "tv"}, oauth_session)

        first, second = mock_host.calls("GET", SEARCH_PATH)
        assert first.headers["Authorization"] == "Bearer cc-1"
        assert second.headers["Authorization"] == "Bearer cc-2"
        assert result.attempts == 2

    async def test_second_401_is_final(
        self,
        invoker: CapabilityInvoker,
        mock_host: MockHost,
        oauth_session: Session,
        audit: InMemoryAuditLog,
    ) -> None:
        mock_host.add_route("GET", SEARCH_PATH, error_response(403, "forbidden"))
        with pytest.raises(AuthUnauthorizedError):
            await invoker.invoke("search-products", {"q": "tv"}, oauth_session)
        assert mock_host.call_count("GET", SEARCH_PATH) == 2
        assert _only_record(audit).outcome is InvocationOutcome.AUTH_FAILED

    async def test_retry_waits_for_refresh_in_flight(
        self,
        manifest: Manifest,
        limiter: RateLimiter,
        http_client: httpx.AsyncClient,
        audit: InMemoryAuditLog,
        runtime_config: RuntimeConfig,
        mock_host: MockHost,
    ) -> None:
        refresh_started = asyncio.Event()
        release_refresh = asyncio.Event()
        backing_off = asyncio.Event()

        class HeldRefreshAuth(AuthManager):
            async def _do_refresh(self, session: Session) -> Session:
                refresh_started.set()
                await release_refresh.wait()
                return await super()._do_refresh(session)

        async def sleep(delay: float) -> None:
            backing_off.set()
            await refresh_started.wait()
            asyncio.get_running_loop().call_soon(release_refresh.set)

        manager = HeldRefreshAuth(mock_host.host, manifest.auth, transport=mock_host.transport)
        mock_host.add_route(
            "POST",
            TOKEN_PATH,
            json_response(200, {"access_token": "cc-1", "token_type": "Bearer", "expires_in": 3600}),
            json_response(200, {"access_token": "cc-2", "token_type": "Bearer", "expires_in": 3600}),
        )
        session = await manager.acquire_session(
            "oauth2-clientCredentials", Credentials(client_id="agent", client_secret="s3cret")
        )
        assert isinstance(session, Session)
        mock_host.add_route(
            "GET", SEARCH_PATH, error_response(401, "token_expired"), json_response(200, PRODUCTS)
        )
        mock_host.add_route(
            "GET",
            "/api/v1/products/{product_id}",
            error_response(503, "unavailable"),
            json_response(200, PRODUCTS["products"][0]),
        )
        invoker = _build_invoker(
            manifest, manager, limiter, http_client, audit, runtime_config, sleep
        )

        lookup = asyncio.create_task(invoker.invoke("get-product", {"product_id": "p-1"}, session))
        await backing_off.wait()
        search = asyncio.create_task(invoker.invoke("search-products", {"q": "tv"}, session))
        product, products = await asyncio.gather(lookup, search)

        assert product.status_code == 200
        assert product.attempts == 2
        assert products.status_code == 200
        assert mock_host.call_count("POST", TOKEN_PATH) == 2
        retried = mock_host.calls("GET", "/api/v1/products/p-1")[-1]
        assert retried.headers["Authorization"] == "Bearer cc-2"

    async def test_api_key_rejection_is_unrefreshable(
        self, invoker: CapabilityInvoker, mock_host: MockHost, api_key_session: Session
    ) -> None:
        mock_host.add_route("GET", SEARCH_PATH, error_response(401, "bad_key"))
        with pytest.raises(UnrefreshableError):
            await invoker.invoke("search-products", {"q": "tv"}, api_key_session)
        assert mock_host.call_count("GET", SEARCH_PATH) == 1


class TestCancellation:
    async def test_cancel_before_send_refunds_and_audits(
        self,
        manifest: Manifest,
        limiter: RateLimiter,
        http_client: httpx.AsyncClient,
        audit: InMemoryAuditLog,
        runtime_config: RuntimeConfig,
        sleeper: Any,
        api_key_session: Session,
        mock_host: MockHost,
    ) -> None:
        started = asyncio.Event()

        class SlowAuth(AuthManager):
            async def ensure_fresh(self, session: Session) -> Session:
                started.set()
                await asyncio.sleep(3600)
                return session

        slow = SlowAuth("shop.example.com", manifest.auth)
        invoker = _build_invoker(
            manifest, slow, limiter, http_client, audit, runtime_config, sleeper
        )
        tokens_before = limiter.state("shop.example.com").tokens

        task = asyncio.create_task(
            invoker.invoke("search-products", {"q": "tv"}, api_key_session)
        )
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert mock_host.capability_calls() == []
        assert limiter.state("shop.example.com").tokens == pytest.approx(tokens_before, abs=0.01)
        record = _only_record(audit)
        assert record.outcome is InvocationOutcome.CANCELLED
        assert record.attempts == 0


@pytest.mark.parametrize(
    ("error", "outcome"),
    [
        (ScopeError("x", {"s"}), InvocationOutcome.SCOPE_DENIED),
        (UnrefreshableError("apiKey", "static"), InvocationOutcome.AUTH_FAILED),
        (InvocationTimeoutError("x", 1.0), InvocationOutcome.TIMEOUT),
        (RuntimeError("?"), InvocationOutcome.ERROR),
    ],
)
def test_classify_error(error: BaseException, outcome: InvocationOutcome) -> None:
    assert classify_error(error) is outcome
