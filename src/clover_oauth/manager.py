"""
OAuth Manager for the Clover merchant gateway.

Owns the credential store, the token exchange protocol and the authorization
flow controller for one Clover app. Everything that needs a credential gets
a reference to this object from the composition root.
"""

import asyncio
import time
from pathlib import Path
from typing import Any, Dict, Optional

from log_utils import LogEvent, LogRecord, debug, error, info, mask_token

from .config import CloverConfig
from .credentials import CredentialRecord, CredentialStore, TokenFile
from .errors import RefreshError, UnauthenticatedError
from .flow import AuthorizationFlowController, UrlLauncher, open_browser
from .protocol import Clock, TokenExchangeProtocol


def format_duration(seconds: float) -> str:
    """Format duration in human readable format"""
    if seconds <= 0:
        return "expired"
    elif seconds < 60:
        return f"{int(seconds)}s"
    elif seconds < 3600:
        return f"{int(seconds / 60)}m"
    elif seconds < 86400:
        hours = int(seconds / 3600)
        minutes = int((seconds % 3600) / 60)
        return f"{hours}h {minutes}m"
    else:
        days = int(seconds / 86400)
        hours = int((seconds % 86400) / 3600)
        return f"{days}d {hours}h"


class OAuthManager:
    """Manages the OAuth credential lifecycle for a single Clover merchant"""

    def __init__(self, config: CloverConfig, store: Optional[CredentialStore] = None,
                 protocol: Optional[TokenExchangeProtocol] = None,
                 launcher: UrlLauncher = open_browser, clock: Clock = time.time):
        self.config = config
        self.clock = clock
        if store is None:
            token_file = TokenFile(Path(config.token_file)) if config.token_file else None
            store = CredentialStore(token_file)
        self.store = store
        self.protocol = protocol or TokenExchangeProtocol(config, clock=clock)
        self.flow = AuthorizationFlowController(config, self.protocol, self.store, launcher)
        self._refresh_task: Optional[asyncio.Task] = None
        self._auto_refresh_task: Optional[asyncio.Task] = None

    @property
    def client_id(self) -> str:
        return self.config.client_id

    @property
    def flow_pending(self) -> bool:
        return self.flow.active_session is not None

    def get_credentials(self) -> Optional[CredentialRecord]:
        return self.store.get()

    def has_valid_tokens(self) -> bool:
        return self.store.has_valid_tokens(self.clock())

    def load_persisted(self) -> Optional[CredentialRecord]:
        """Pick up the credential mirrored by a previous run, if any."""
        return self.store.load()

    async def start_flow(self, port: Optional[int] = None) -> CredentialRecord:
        """Run the interactive authorization flow."""
        return await self.flow.start_flow(port)

    async def refresh(self) -> CredentialRecord:
        """Refresh the access token.

        Concurrent callers share one in-flight refresh: the previous refresh
        token is usually invalidated after first use, so a second request
        would fail anyway.
        """
        task = self._refresh_task
        if task is not None and not task.done():
            debug(LogRecord(
                event=LogEvent.REFRESH_JOINED.value,
                message="Joining refresh already in progress"
            ))
            return await asyncio.shield(task)

        current = self.store.get()
        if current is None or not current.refresh_token:
            raise UnauthenticatedError("No refresh token available")

        task = asyncio.create_task(self._do_refresh(current))
        self._refresh_task = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done():
                self._refresh_task = None

    async def _do_refresh(self, current: CredentialRecord) -> CredentialRecord:
        debug(LogRecord(
            event=LogEvent.ENSURE_VALID_REFRESH.value,
            message=f"Refreshing access token for merchant {current.merchant_id}"
        ))
        record = await self.protocol.refresh(current.refresh_token, previous=current)
        return self.store.save(record)

    async def ensure_valid(self) -> str:
        """Return a usable access token, refreshing it if it has expired."""
        if self.has_valid_tokens():
            return self.store.get().access_token

        current = self.store.get()
        if current is None or not current.refresh_token:
            raise UnauthenticatedError(
                "No valid tokens available. Please authenticate using the OAuth flow."
            )

        try:
            record = await self.refresh()
        except RefreshError as e:
            error(LogRecord(
                event=LogEvent.REFRESH_FAILED.value,
                message=f"Error refreshing token: {e}"
            ))
            raise
        return record.access_token

    def clear(self) -> None:
        self.store.clear()

    def get_status(self) -> Dict[str, Any]:
        """Get credential status without exposing secrets"""
        record = self.store.get()
        now = self.clock()
        status: Dict[str, Any] = {
            "authenticated": record is not None,
            "has_valid_tokens": self.has_valid_tokens(),
            "flow_pending": self.flow_pending,
            "client_id": self.client_id,
            "base_url": self.config.base_url,
        }
        if record is None:
            return status

        status.update({
            "merchant_id": record.merchant_id,
            "access_token_preview": mask_token(record.access_token),
            "refresh_token_preview": mask_token(record.refresh_token),
            "has_refresh_token": bool(record.refresh_token),
            "access_token_expiry": record.access_token_expiry,
            "refresh_token_expiry": record.refresh_token_expiry,
        })
        if record.access_token_expiry is not None:
            expires_in = max(0, record.access_token_expiry - now)
            status["expires_in_seconds"] = int(expires_in)
            status["expires_in_human"] = format_duration(expires_in)
        if record.refresh_token_expiry is not None:
            status["refresh_expires_in_human"] = format_duration(record.refresh_token_expiry - now)
        return status

    def start_auto_refresh(self) -> Optional[asyncio.Task]:
        """Start the background refresh loop (needs a running event loop)."""
        if self._auto_refresh_task is not None and not self._auto_refresh_task.done():
            return self._auto_refresh_task
        self._auto_refresh_task = asyncio.create_task(self._auto_refresh_loop())
        info(LogRecord(
            event=LogEvent.AUTO_REFRESH_STARTED.value,
            message="Started OAuth auto-refresh"
        ))
        return self._auto_refresh_task

    async def stop_auto_refresh(self) -> None:
        task = self._auto_refresh_task
        self._auto_refresh_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _auto_refresh_loop(self) -> None:
        """Refresh ``refresh_margin_seconds`` before the access token expires."""
        margin = self.config.refresh_margin_seconds
        while True:
            try:
                record = self.store.get()
                if record is None or not record.refresh_token or record.access_token_expiry is None:
                    await asyncio.sleep(60)
                    continue

                if record.access_token_expiry - self.clock() <= margin:
                    record = await self.refresh()

                # Never spin faster than once a minute, even for short-lived tokens
                sleep_time = max(60, record.access_token_expiry - self.clock() - margin)
                debug(LogRecord(
                    event=LogEvent.AUTO_REFRESH_SCHEDULED.value,
                    message=f"Next refresh in {sleep_time / 60:.1f} minutes"
                ))
                await asyncio.sleep(sleep_time)
            except asyncio.CancelledError:
                info(LogRecord(
                    event=LogEvent.AUTO_REFRESH_CANCELLED.value,
                    message="Auto-refresh cancelled"
                ))
                raise
            except (RefreshError, UnauthenticatedError) as e:
                error(LogRecord(
                    event=LogEvent.AUTO_REFRESH_FAILED.value,
                    message=f"Auto-refresh failed, re-authorization may be required: {e}"
                ))
                await asyncio.sleep(300)
