"""Tests for the OAuth manager: validity, refresh and status."""

import asyncio

import pytest
import respx
from dotenv import dotenv_values
from httpx import Response

from clover_oauth import CredentialStore, OAuthManager, RefreshError, UnauthenticatedError
from clover_oauth.manager import format_duration
from conftest import BASE_URL, NOW, make_record

V2_REFRESH = f"{BASE_URL}/oauth/v2/refresh"
V1_TOKEN = f"{BASE_URL}/oauth/token"

REFRESHED = {
    "access_token": "refreshed-access-token",
    "access_token_expiry": NOW + 7200,
}


class TestEnsureValid:

    @pytest.mark.asyncio
    async def test_returns_current_token_without_network(self, manager):
        manager.store.save(make_record())
        with respx.mock:
            token = await manager.ensure_valid()
        assert token == "access-token-0001"

    @pytest.mark.asyncio
    async def test_no_credential(self, manager):
        with pytest.raises(UnauthenticatedError, match="No valid tokens available"):
            await manager.ensure_valid()

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self, manager, clock):
        manager.store.save(make_record(refresh_token=""))
        clock.advance(3600)
        with pytest.raises(UnauthenticatedError):
            await manager.ensure_valid()

    @pytest.mark.asyncio
    async def test_refreshes_expired_token(self, manager, clock):
        manager.store.save(make_record())
        clock.advance(3600)

        with respx.mock:
            route = respx.post(V2_REFRESH).mock(return_value=Response(200, json=REFRESHED))
            token = await manager.ensure_valid()

        assert route.call_count == 1
        assert token == "refreshed-access-token"
        stored = manager.get_credentials()
        assert stored.merchant_id == "MERCHANT1"
        assert stored.refresh_token == "refresh-token-0001"
        assert stored.access_token_expiry == NOW + 7200
        assert manager.has_valid_tokens()

    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_previous_record(self, manager, clock):
        manager.store.save(make_record())
        clock.advance(3600)

        with respx.mock:
            respx.post(V2_REFRESH).mock(return_value=Response(401, json={"message": "expired"}))
            respx.post(V1_TOKEN).mock(return_value=Response(401, json={"message": "expired"}))
            with pytest.raises(RefreshError):
                await manager.ensure_valid()

        assert manager.get_credentials() == make_record()


class TestRefresh:

    @pytest.mark.asyncio
    async def test_requires_refresh_token(self, manager):
        with pytest.raises(UnauthenticatedError, match="No refresh token available"):
            await manager.refresh()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, manager, clock):
        manager.store.save(make_record())
        clock.advance(3600)

        with respx.mock:
            route = respx.post(V2_REFRESH).mock(return_value=Response(200, json=REFRESHED))
            tokens = await asyncio.gather(*(manager.ensure_valid() for _ in range(5)))

        assert route.call_count == 1
        assert set(tokens) == {"refreshed-access-token"}

    @pytest.mark.asyncio
    async def test_sequential_refreshes_each_hit_the_network(self, manager):
        manager.store.save(make_record())

        with respx.mock:
            route = respx.post(V2_REFRESH).mock(return_value=Response(200, json=REFRESHED))
            await manager.refresh()
            await manager.refresh()

        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_refresh_is_mirrored_to_token_file(self, clover_config, clock, launcher, token_file):
        clover_config.token_file = str(token_file.path)
        manager = OAuthManager(clover_config, launcher=launcher, clock=clock)
        manager.store.save(make_record())

        with respx.mock:
            respx.post(V2_REFRESH).mock(return_value=Response(200, json=REFRESHED))
            await manager.refresh()

        values = dotenv_values(token_file.path)
        assert values["CLOVER_API_KEY"] == "refreshed-access-token"
        assert values["CLOVER_MERCHANT_ID"] == "MERCHANT1"

    @pytest.mark.asyncio
    async def test_load_persisted(self, clover_config, clock, launcher, token_file):
        token_file.write(make_record())
        clover_config.token_file = str(token_file.path)
        manager = OAuthManager(clover_config, launcher=launcher, clock=clock)

        assert manager.load_persisted() == make_record()
        assert manager.has_valid_tokens()


class TestAutoRefresh:

    @pytest.mark.asyncio
    async def test_refreshes_inside_margin(self, manager, clock):
        manager.store.save(make_record(access_token_expiry=NOW + 60))

        with respx.mock:
            route = respx.post(V2_REFRESH).mock(return_value=Response(200, json=REFRESHED))
            manager.start_auto_refresh()
            for _ in range(100):
                if route.called:
                    break
                await asyncio.sleep(0.01)
            await manager.stop_auto_refresh()

        assert route.call_count == 1
        assert manager.get_credentials().access_token == "refreshed-access-token"

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, manager):
        first = manager.start_auto_refresh()
        assert manager.start_auto_refresh() is first
        await manager.stop_auto_refresh()
        assert first.cancelled()


class TestStatus:

    def test_status_without_credential(self, manager):
        status = manager.get_status()
        assert status["authenticated"] is False
        assert status["has_valid_tokens"] is False
        assert status["flow_pending"] is False
        assert status["client_id"] == "test-client-id"
        assert "merchant_id" not in status

    def test_status_masks_tokens(self, manager, clock):
        manager.store.save(make_record())
        clock.advance(1800)

        status = manager.get_status()
        assert status["merchant_id"] == "MERCHANT1"
        assert status["access_token_preview"] == "access...0001"
        assert "access-token-0001" not in str(status)
        assert "refresh-token-0001" not in str(status)
        assert status["expires_in_seconds"] == 1800
        assert status["expires_in_human"] == "30m"
        assert status["refresh_expires_in_human"] == "29d 23h"

    def test_clear(self, manager):
        manager.store.save(make_record())
        manager.clear()
        assert manager.get_credentials() is None

    def test_injected_store(self, clover_config, clock):
        store = CredentialStore()
        manager = OAuthManager(clover_config, store=store, clock=clock)
        assert manager.store is store
        assert manager.flow.store is store


class TestFormatDuration:

    @pytest.mark.parametrize("seconds,expected", [
        (0, "expired"),
        (-5, "expired"),
        (42, "42s"),
        (600, "10m"),
        (3 * 3600 + 25 * 60, "3h 25m"),
        (2 * 86400 + 5 * 3600, "2d 5h"),
    ])
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected
