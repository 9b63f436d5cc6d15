"""Pytest configuration and fixtures for Clover Merchant Gateway tests."""

import logging
import sys
from pathlib import Path
from typing import List

import pytest

# Add src to Python path
current_dir = Path(__file__).parent
src_dir = current_dir.parent / "src"
sys.path.insert(0, str(src_dir))

from clover_oauth import CloverConfig, CredentialRecord, OAuthManager, TokenFile

BASE_URL = "https://apisandbox.dev.clover.com"
NOW = 1_700_000_000


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingLauncher:
    """Browser launcher stand-in that remembers the URLs it was given."""

    def __init__(self, result: bool = True):
        self.result = result
        self.urls: List[str] = []

    def __call__(self, url: str) -> bool:
        self.urls.append(url)
        return self.result


def make_record(access_token: str = "access-token-0001", merchant_id: str = "MERCHANT1",
                refresh_token: str = "refresh-token-0001", access_token_expiry=NOW + 3600,
                refresh_token_expiry=NOW + 30 * 86400) -> CredentialRecord:
    return CredentialRecord(
        access_token=access_token,
        merchant_id=merchant_id,
        refresh_token=refresh_token,
        access_token_expiry=access_token_expiry,
        refresh_token_expiry=refresh_token_expiry,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def launcher() -> RecordingLauncher:
    return RecordingLauncher()


@pytest.fixture
def clover_config() -> CloverConfig:
    """Complete config with persistence off and an ephemeral callback port."""
    return CloverConfig(
        client_id="test-client-id",
        client_secret="test-client-secret",
        base_url=BASE_URL,
        callback_port=0,
        token_file="",
        flow_timeout=5,
        shutdown_grace_seconds=0,
    )


@pytest.fixture
def token_file(tmp_path) -> TokenFile:
    """An existing dotenv file holding an unrelated key."""
    path = tmp_path / ".env"
    path.write_text("CLOVER_CLIENT_ID=test-client-id\n", encoding="utf-8")
    return TokenFile(path)


@pytest.fixture
def manager(clover_config, clock, launcher) -> OAuthManager:
    return OAuthManager(clover_config, launcher=launcher, clock=clock)


@pytest.fixture
def app_logs(caplog):
    """caplog for the application logger, which does not propagate to root."""
    logger = logging.getLogger("clover-merchant-gateway")
    propagate = logger.propagate
    logger.propagate = False
    logger.addHandler(caplog.handler)
    yield caplog
    logger.removeHandler(caplog.handler)
    logger.propagate = propagate
