"""Tests for the OAuth, merchant and health routes."""

from unittest.mock import AsyncMock

import fastapi
import pytest
import pytest_asyncio
import respx
from httpx import ASGITransport, AsyncClient, ConnectError, Response

from clover_api import CloverApiClient
from clover_oauth import (
    AuthorizationDeniedError, ExchangeError, FlowAlreadyActiveError,
    FlowTimeoutError, ListenerBindError, RefreshError
)
from conftest import BASE_URL, NOW, make_record
from routers.health import create_health_router
from routers.merchant import create_merchant_router
from routers.oauth import create_oauth_router

MERCHANT_URL = f"{BASE_URL}/v3/merchants/MERCHANT1"


@pytest_asyncio.fixture
async def api(manager):
    """Test app wired the same way create_app wires the routers."""
    clover_client = CloverApiClient(manager)
    app = fastapi.FastAPI()
    app.include_router(create_oauth_router(manager))
    app.include_router(create_merchant_router(clover_client))
    app.include_router(create_health_router(manager, "Clover Merchant Gateway", "0.1.0"))

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://gateway") as client:
        yield client
    await clover_client.aclose()


class TestOAuthRoutes:

    @pytest.mark.asyncio
    async def test_status_without_credential(self, api):
        response = await api.get("/oauth/status")
        assert response.status_code == 200
        assert response.json()["authenticated"] is False

    @pytest.mark.asyncio
    async def test_flow_success(self, api, manager):
        manager.start_flow = AsyncMock(return_value=make_record())

        response = await api.post("/oauth/flow", params={"port": 4100})

        assert response.status_code == 200
        data = response.json()
        assert data["merchant_id"] == "MERCHANT1"
        assert data["access_token_preview"] == "access...0001"
        manager.start_flow.assert_awaited_once_with(4100)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc,status_code", [
        (FlowAlreadyActiveError("OAuth server is already running"), 409),
        (ListenerBindError("port in use"), 503),
        (FlowTimeoutError("no callback"), 504),
        (AuthorizationDeniedError("denied"), 400),
        (ExchangeError([], message="exchange failed"), 502),
    ])
    async def test_flow_error_mapping(self, api, manager, exc, status_code):
        manager.start_flow = AsyncMock(side_effect=exc)

        response = await api.post("/oauth/flow")

        assert response.status_code == status_code
        assert response.json()["error"] == str(exc)

    @pytest.mark.asyncio
    async def test_flow_requires_client_credentials(self, api, manager):
        manager.config.client_secret = ""
        manager.start_flow = AsyncMock()

        response = await api.post("/oauth/flow")

        assert response.status_code == 503
        manager.start_flow.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_without_credential(self, api):
        response = await api.post("/oauth/refresh")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_refresh_rejected(self, api, manager):
        manager.store.save(make_record())
        with respx.mock:
            respx.post(f"{BASE_URL}/oauth/v2/refresh").mock(return_value=Response(400))
            respx.post(f"{BASE_URL}/oauth/token").mock(return_value=Response(400, json={"message": "invalid_grant"}))
            response = await api.post("/oauth/refresh")

        assert response.status_code == 401
        assert response.json()["details"] == "invalid_grant"

    @pytest.mark.asyncio
    async def test_refresh_success(self, api, manager):
        manager.store.save(make_record())
        with respx.mock:
            respx.post(f"{BASE_URL}/oauth/v2/refresh").mock(return_value=Response(200, json={
                "access_token": "refreshed-access-token",
                "access_token_expiry": NOW + 600,
            }))
            response = await api.post("/oauth/refresh")

        assert response.status_code == 200
        data = response.json()
        assert data["expires_in_seconds"] == 600
        assert data["expires_in_human"] == "10m"

    @pytest.mark.asyncio
    async def test_clear_tokens(self, api, manager):
        manager.store.save(make_record())
        response = await api.delete("/oauth/tokens")
        assert response.status_code == 200
        assert manager.get_credentials() is None


class TestMerchantRoutes:

    @pytest.mark.asyncio
    async def test_merchant_info(self, api, manager):
        manager.store.save(make_record())
        with respx.mock:
            respx.get(MERCHANT_URL).mock(return_value=Response(200, json={"id": "MERCHANT1"}))
            response = await api.get("/merchant")

        assert response.status_code == 200
        assert response.json() == {"id": "MERCHANT1"}

    @pytest.mark.asyncio
    async def test_inventory_passes_filters(self, api, manager):
        manager.store.save(make_record())
        with respx.mock:
            route = respx.get(f"{MERCHANT_URL}/items").mock(return_value=Response(200, json={"elements": []}))
            response = await api.get("/inventory", params={"query": "name=Tea", "offset": 20})

        assert response.status_code == 200
        params = route.calls.last.request.url.params
        assert params["filter"] == "name=Tea"
        assert params["offset"] == "20"

    @pytest.mark.asyncio
    async def test_unauthenticated(self, api):
        response = await api.get("/orders")
        assert response.status_code == 401
        assert "initiate_oauth_flow" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_upstream_error_status_is_kept(self, api, manager):
        manager.store.save(make_record())
        with respx.mock:
            respx.get(f"{MERCHANT_URL}/items/missing").mock(
                return_value=Response(404, json={"message": "Not found"})
            )
            response = await api.get("/items/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "Clover API error: 404 Not found"

    @pytest.mark.asyncio
    async def test_connection_failure_returns_bad_gateway(self, api, manager):
        manager.store.save(make_record())
        with respx.mock:
            respx.get(MERCHANT_URL).mock(side_effect=ConnectError("connection refused"))
            response = await api.get("/merchant")

        assert response.status_code == 502
        assert response.headers["content-type"] == "application/json"
        assert response.json()["error"] == "Clover API error: 502 Request failed: connection refused"

    @pytest.mark.asyncio
    async def test_expired_credential_refresh_failure(self, api, manager, clock):
        manager.store.save(make_record())
        clock.advance(3600)
        manager.refresh = AsyncMock(side_effect=RefreshError([], message="Token expired or invalid"))

        response = await api.get("/orders/O1")

        assert response.status_code == 401


class TestHealthRoutes:

    @pytest.mark.asyncio
    async def test_health(self, api, manager):
        manager.store.save(make_record())
        response = await api.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "has_valid_tokens": True, "flow_pending": False}

    @pytest.mark.asyncio
    async def test_health_unconfigured(self, api, manager):
        manager.config.client_id = ""
        response = await api.get("/health")
        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_root(self, api):
        response = await api.get("/")
        assert response.json()["service"] == "Clover Merchant Gateway"
