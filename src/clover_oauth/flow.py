"""
Authorization flow controller.

Drives one interactive authorization-code flow: start the callback listener,
hand the authorization URL to the user, wait for the redirect to resolve the
session, then tear the listener down.
"""

import asyncio
import secrets
import threading
import webbrowser
from typing import Callable, Optional

from log_utils import LogEvent, LogRecord, debug, error, info, warning

from .callback import CallbackListener, create_callback_app
from .config import AuthorizeUrlVariant, CloverConfig
from .credentials import CredentialRecord, CredentialStore
from .errors import FlowAlreadyActiveError, FlowTimeoutError, ListenerBindError, OAuthError
from .protocol import TokenExchangeProtocol, build_authorize_url
from .session import AuthorizationSession

UrlLauncher = Callable[[str], bool]


def open_browser(url: str) -> bool:
    """Open ``url`` in the default browser from a background thread. Never raises."""

    def _open() -> None:
        try:
            opened = webbrowser.open(url)
        except Exception as e:
            opened = False
            warning(LogRecord(
                event=LogEvent.BROWSER_LAUNCH_FAILED.value,
                message=f"Failed to open browser: {e}"
            ))
        if not opened:
            info(LogRecord(
                event=LogEvent.FLOW_INSTRUCTIONS.value,
                message=f"Please manually open this URL in your browser: {url}"
            ))

    threading.Thread(target=_open, daemon=True).start()
    return True


class AuthorizationFlowController:
    """Runs at most one authorization session at a time."""

    def __init__(self, config: CloverConfig, protocol: TokenExchangeProtocol,
                 store: CredentialStore, launcher: UrlLauncher = open_browser):
        self.config = config
        self.protocol = protocol
        self.store = store
        self.launcher = launcher
        self._session: Optional[AuthorizationSession] = None
        self._shutdown_task: Optional[asyncio.Task] = None

    @property
    def active_session(self) -> Optional[AuthorizationSession]:
        return self._session

    async def wait_closed(self) -> None:
        """Wait for a listener that is still serving its result page to stop."""
        task = self._shutdown_task
        if task is None:
            return
        await asyncio.shield(task)
        if self._shutdown_task is task:
            self._shutdown_task = None

    async def start_flow(self, port: Optional[int] = None) -> CredentialRecord:
        """Run the authorization flow and return the stored credential."""
        if self._session is not None:
            raise FlowAlreadyActiveError("OAuth server is already running")

        if port is None:
            port = self.config.callback_port

        # 16 random bytes, hex encoded
        session = AuthorizationSession(state=secrets.token_hex(16), port=port)
        self._session = session
        listener = CallbackListener(
            create_callback_app(session, self.protocol, self.store, self.config),
            host=self.config.callback_host,
        )

        try:
            # The previous flow's listener may still hold the port
            await self.wait_closed()
            session.port = await listener.start(port)
        except Exception:
            self._session = None
            raise

        info(LogRecord(
            event=LogEvent.FLOW_STARTED.value,
            message="Starting OAuth authorization flow",
            data={"port": session.port}
        ))

        try:
            self._surface_authorize_url(session)
            record = await self._wait_for_resolution(session, listener)
        except OAuthError as e:
            error(LogRecord(
                event=LogEvent.FLOW_FAILED.value,
                message=f"OAuth flow failed: {e}"
            ))
            raise
        finally:
            # Only a delivered callback has a page that needs time to render
            grace = self.config.shutdown_grace_seconds if session.callback_delivered else 0.0
            if grace > 0:
                self._shutdown_task = asyncio.create_task(listener.stop(grace))
            else:
                await listener.stop()
            self._session = None

        info(LogRecord(
            event=LogEvent.FLOW_SUCCEEDED.value,
            message=f"OAuth flow completed for merchant {record.merchant_id}",
            data={"merchant_id": record.merchant_id}
        ))
        return record

    def _surface_authorize_url(self, session: AuthorizationSession) -> str:
        redirect_uri = f"http://localhost:{session.port}{self.config.callback_path}"
        legacy_url = build_authorize_url(
            self.config.base_url, self.config.client_id, redirect_uri, session.state,
            AuthorizeUrlVariant.LEGACY,
        )
        versioned_url = build_authorize_url(
            self.config.base_url, self.config.client_id, redirect_uri, session.state,
            AuthorizeUrlVariant.VERSIONED,
        )
        if self.config.authorize_url_variant == AuthorizeUrlVariant.VERSIONED:
            auth_url = versioned_url
        else:
            auth_url = legacy_url

        session.redirect_uri = redirect_uri
        session.authorize_url = auth_url

        debug(LogRecord(
            event=LogEvent.FLOW_AUTHORIZE_URL.value,
            message="Authorization URLs computed",
            data={"v1": legacy_url, "v2": versioned_url, "using": auth_url}
        ))

        for line in (
            "1. A browser window will open to the Clover authorization page",
            "2. Log in with your Clover account if prompted",
            "3. Authorize the app to access your Clover account",
            "4. You will be redirected back to this application",
        ):
            info(LogRecord(event=LogEvent.FLOW_INSTRUCTIONS.value, message=line))

        try:
            launched = self.launcher(auth_url)
        except Exception as e:
            launched = False
            warning(LogRecord(
                event=LogEvent.BROWSER_LAUNCH_FAILED.value,
                message=f"Failed to open browser: {e}"
            ))
        if not launched:
            info(LogRecord(
                event=LogEvent.FLOW_INSTRUCTIONS.value,
                message=f"Please manually open this URL in your browser: {auth_url}"
            ))
        return auth_url

    async def _wait_for_resolution(self, session: AuthorizationSession,
                                   listener: CallbackListener) -> CredentialRecord:
        completion = session.completion
        timeout = self.config.flow_timeout or None
        await asyncio.wait(
            {completion.future, listener.serve_task},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if completion.pending:
            if listener.serve_task.done():
                exc = None if listener.serve_task.cancelled() else listener.serve_task.exception()
                completion.fail(ListenerBindError(f"OAuth callback listener stopped unexpectedly: {exc}"))
            else:
                completion.fail(FlowTimeoutError(f"No OAuth callback received within {timeout:g} seconds"))

        # Raises the failure recorded on the session, if any
        return completion.future.result()
