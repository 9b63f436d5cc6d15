"""Tests for the authorization flow controller with a real callback listener."""

import asyncio
import socket
import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from clover_oauth import (
    AuthorizationFlowController, CredentialStore, ExchangeError,
    FlowAlreadyActiveError, FlowTimeoutError, ListenerBindError
)
from conftest import make_record
from test_callback import StubProtocol


def _callback_target(url: str):
    """Return (redirect_uri on 127.0.0.1, state) from an authorization URL."""
    query = parse_qs(urlparse(url).query)
    redirect_uri = query["redirect_uri"][0].replace("localhost", "127.0.0.1")
    return redirect_uri, query["state"][0]


async def _deliver_callback(url: str, params: dict) -> httpx.Response:
    redirect_uri, state = _callback_target(url)
    async with httpx.AsyncClient(trust_env=False) as client:
        return await client.get(redirect_uri, params={**params, "state": state})


class CallbackLauncher:
    """Plays the merchant: follows the authorization URL back to the listener."""

    def __init__(self, params=None):
        self.params = params or {"code": "auth-code", "merchant_id": "MERCHANT1"}
        self.urls = []
        self.responses = []
        self.tasks = []

    def __call__(self, url: str) -> bool:
        self.urls.append(url)
        self.tasks.append(asyncio.get_running_loop().create_task(self._redirect(url)))
        return True

    async def _redirect(self, url: str) -> None:
        self.responses.append(await _deliver_callback(url, self.params))


def _controller(config, protocol, store, launcher) -> AuthorizationFlowController:
    return AuthorizationFlowController(config, protocol, store, launcher)


class TestAuthorizationFlow:

    @pytest.mark.asyncio
    async def test_flow_completes_and_stores_credential(self, clover_config):
        protocol, store = StubProtocol(), CredentialStore()
        launcher = CallbackLauncher()
        controller = _controller(clover_config, protocol, store, launcher)

        record = await controller.start_flow()
        await asyncio.gather(*launcher.tasks)

        assert record == make_record()
        assert store.get() == make_record()
        assert protocol.codes == ["auth-code"]
        assert launcher.responses[0].status_code == 200
        assert controller.active_session is None

        query = parse_qs(urlparse(launcher.urls[0]).query)
        assert len(query["state"][0]) == 32
        assert query["redirect_uri"][0].endswith("/oauth-callback")

    @pytest.mark.asyncio
    async def test_each_flow_uses_fresh_state(self, clover_config):
        launcher = CallbackLauncher()
        controller = _controller(clover_config, StubProtocol(), CredentialStore(), launcher)

        await controller.start_flow()
        await controller.start_flow()
        await asyncio.gather(*launcher.tasks)

        states = [parse_qs(urlparse(url).query)["state"][0] for url in launcher.urls]
        assert states[0] != states[1]

    @pytest.mark.asyncio
    async def test_exchange_failure_propagates(self, clover_config):
        protocol = StubProtocol(exc=ExchangeError([], message="bad code"))
        store = CredentialStore()
        launcher = CallbackLauncher()
        controller = _controller(clover_config, protocol, store, launcher)

        with pytest.raises(ExchangeError):
            await controller.start_flow()
        await asyncio.gather(*launcher.tasks)

        assert launcher.responses[0].status_code == 500
        assert store.get() is None
        assert controller.active_session is None

    @pytest.mark.asyncio
    async def test_second_flow_rejected_while_pending(self, clover_config, launcher):
        protocol, store = StubProtocol(), CredentialStore()
        controller = _controller(clover_config, protocol, store, launcher)

        first = asyncio.create_task(controller.start_flow())
        while not launcher.urls:
            await asyncio.sleep(0.01)
        session = controller.active_session

        with pytest.raises(FlowAlreadyActiveError):
            await controller.start_flow()

        # The rejected call left the pending session untouched
        assert controller.active_session is session
        assert len(launcher.urls) == 1
        response = await _deliver_callback(launcher.urls[0], {"code": "auth-code", "merchant_id": "MERCHANT1"})

        assert response.status_code == 200
        assert await first == make_record()
        assert store.get() == make_record()
        assert protocol.codes == ["auth-code"]

    @pytest.mark.asyncio
    async def test_timeout_skips_shutdown_grace(self, clover_config, launcher):
        clover_config.flow_timeout = 0.2
        clover_config.shutdown_grace_seconds = 2
        controller = _controller(clover_config, StubProtocol(), CredentialStore(), launcher)

        started = time.monotonic()
        with pytest.raises(FlowTimeoutError):
            await controller.start_flow()

        assert time.monotonic() - started < 1.5

    @pytest.mark.asyncio
    async def test_success_returns_before_shutdown_grace(self, clover_config):
        clover_config.shutdown_grace_seconds = 2
        launcher = CallbackLauncher()
        controller = _controller(clover_config, StubProtocol(), CredentialStore(), launcher)

        started = time.monotonic()
        record = await controller.start_flow()
        elapsed = time.monotonic() - started
        await asyncio.gather(*launcher.tasks)

        assert record == make_record()
        assert elapsed < 1.5
        assert controller.active_session is None
        assert launcher.responses[0].status_code == 200

        # The listener keeps serving through the grace period, then releases the port
        await controller.wait_closed()
        port = urlparse(parse_qs(urlparse(launcher.urls[0]).query)["redirect_uri"][0]).port
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("127.0.0.1", port))

    @pytest.mark.asyncio
    async def test_next_flow_waits_for_previous_listener(self, clover_config):
        clover_config.shutdown_grace_seconds = 0.3
        launcher = CallbackLauncher()
        controller = _controller(clover_config, StubProtocol(), CredentialStore(), launcher)

        await controller.start_flow()
        first_port = urlparse(_callback_target(launcher.urls[0])[0]).port

        await controller.start_flow(first_port)
        await asyncio.gather(*launcher.tasks)
        await controller.wait_closed()

        assert [response.status_code for response in launcher.responses] == [200, 200]
        assert urlparse(_callback_target(launcher.urls[1])[0]).port == first_port

    @pytest.mark.asyncio
    async def test_timeout_releases_listener_port(self, clover_config, launcher):
        clover_config.flow_timeout = 0.2
        controller = _controller(clover_config, StubProtocol(), CredentialStore(), launcher)

        with pytest.raises(FlowTimeoutError):
            await controller.start_flow()

        assert controller.active_session is None
        port = urlparse(parse_qs(urlparse(launcher.urls[0]).query)["redirect_uri"][0]).port
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("127.0.0.1", port))

    @pytest.mark.asyncio
    async def test_bind_failure(self, clover_config, launcher):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen(1)
            port = blocker.getsockname()[1]
            controller = _controller(clover_config, StubProtocol(), CredentialStore(), launcher)

            with pytest.raises(ListenerBindError):
                await controller.start_flow(port)

        assert launcher.urls == []
        assert controller.active_session is None

    @pytest.mark.asyncio
    async def test_launcher_failure_does_not_abort_flow(self, clover_config):
        clover_config.flow_timeout = 0.2

        def broken_launcher(url):
            raise RuntimeError("no display")

        controller = _controller(clover_config, StubProtocol(), CredentialStore(), broken_launcher)

        # Still waiting for a manual redirect until the timeout
        with pytest.raises(FlowTimeoutError):
            await controller.start_flow()
