"""
Local HTTP listener that receives the Clover authorization redirect.

The listener serves a single FastAPI route on a loopback port for the
lifetime of one authorization session. The route validates the redirect,
runs the code exchange, stores the credential and resolves the session.
"""

import asyncio
import html
import socket
import time
from typing import Optional

import fastapi
import uvicorn
from fastapi import Query
from fastapi.responses import HTMLResponse

from log_utils import LogEvent, LogRecord, debug, error, info, warning, mask_token

from .config import CloverConfig, StatePolicy
from .credentials import ACCESS_TOKEN_DEFAULT_TTL, REFRESH_TOKEN_DEFAULT_TTL, CredentialStore
from .errors import (
    AuthorizationDeniedError, ExchangeError, ListenerBindError,
    MissingCodeError, StateMismatchError,
)
from .protocol import TokenExchangeProtocol
from .session import AuthorizationSession

_PAGE = """<html>
  <head>
    <title>{title}</title>
    <style>
      body {{
        font-family: Arial, sans-serif;
        max-width: 600px;
        margin: 0 auto;
        padding: 20px;
        line-height: 1.6;
      }}
      .status {{
        color: {color};
        font-weight: bold;
      }}
    </style>
  </head>
  <body>
    <h1>{heading}</h1>
    <p class="status">{status}</p>
    <p>{hint}</p>
  </body>
</html>
"""


def render_page(title: str, heading: str, status: str, hint: str, color: str = "#4CAF50") -> str:
    return _PAGE.format(
        title=html.escape(title),
        heading=html.escape(heading),
        status=html.escape(status),
        hint=html.escape(hint),
        color=color,
    )


def _error_page(message: str, status_code: int) -> HTMLResponse:
    return HTMLResponse(
        render_page(
            "OAuth Error",
            "Authorization Failed",
            f"Error: {message}",
            "Please close this window and try again.",
            color="#dc3545",
        ),
        status_code=status_code,
    )


def create_callback_app(session: AuthorizationSession, protocol: TokenExchangeProtocol,
                        store: CredentialStore, config: CloverConfig) -> fastapi.FastAPI:
    """Create the redirect-target app bound to one authorization session."""
    app = fastapi.FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.get(config.callback_path, response_class=HTMLResponse)
    async def oauth_callback(
        code: Optional[str] = None,
        state: Optional[str] = None,
        merchant_id: Optional[str] = None,
        client_id: Optional[str] = None,
        provider_error: Optional[str] = Query(None, alias="error"),
    ) -> HTMLResponse:
        """Handle the authorization redirect."""
        debug(LogRecord(
            event=LogEvent.CALLBACK_RECEIVED.value,
            message="OAuth callback received",
            data={
                "code": f"{code[:6]}..." if code else None,
                "state": state,
                "expected_state": session.state,
                "merchant_id": merchant_id,
                "client_id": client_id,
            }
        ))

        # One delivery per session; later redirects must not spend another code
        if not session.completion.pending or session.exchange_started:
            warning(LogRecord(
                event=LogEvent.CALLBACK_DUPLICATE.value,
                message="Ignoring OAuth callback for a session that is already being handled"
            ))
            return _error_page("This authorization request was already processed", 409)

        session.callback_delivered = True

        if provider_error:
            session.completion.fail(AuthorizationDeniedError(
                f"Authorization was denied: {provider_error}", upstream_message=provider_error
            ))
            return _error_page(provider_error, 400)

        if session.state and state != session.state:
            if config.state_policy == StatePolicy.STRICT:
                warning(LogRecord(
                    event=LogEvent.STATE_MISMATCH.value,
                    message=f"State mismatch: received \"{state}\", expected \"{session.state}\"; rejecting"
                ))
                session.completion.fail(StateMismatchError("OAuth state mismatch"))
                return _error_page("State mismatch", 400)
            warning(LogRecord(
                event=LogEvent.STATE_MISMATCH.value,
                message=(
                    f"State mismatch: received \"{state}\", expected \"{session.state}\"; "
                    "proceeding since this might be from app installation"
                )
            ))

        if not code:
            session.completion.fail(MissingCodeError("Missing authorization code"))
            return _error_page("Missing authorization code", 400)

        session.exchange_started = True
        try:
            debug(LogRecord(
                event=LogEvent.CALLBACK_RECEIVED.value,
                message="Received authorization code, exchanging for tokens"
            ))
            record = await protocol.exchange_code(code)

            if not record.merchant_id and merchant_id:
                debug(LogRecord(
                    event=LogEvent.MERCHANT_ID_BACKFILLED.value,
                    message=f"No merchant ID in token response, using merchant ID from callback: {merchant_id}"
                ))
                record.merchant_id = merchant_id
            if not record.merchant_id:
                raise ExchangeError([], message="Token response carried no merchant id")

            now = int(time.time())
            if not record.access_token_expiry:
                debug(LogRecord(
                    event=LogEvent.EXPIRY_DEFAULTED.value,
                    message="No valid access token expiry in response, setting default (1 hour)"
                ))
                record.access_token_expiry = now + ACCESS_TOKEN_DEFAULT_TTL
            if not record.refresh_token_expiry:
                debug(LogRecord(
                    event=LogEvent.EXPIRY_DEFAULTED.value,
                    message="No valid refresh token expiry in response, setting default (30 days)"
                ))
                record.refresh_token_expiry = now + REFRESH_TOKEN_DEFAULT_TTL

            store.save(record)
        except Exception as e:
            error(LogRecord(
                event=LogEvent.FLOW_FAILED.value,
                message=f"Error exchanging code for tokens: {e}"
            ), exc=e)
            session.completion.fail(e)
            return _error_page(str(e), 500)

        info(LogRecord(
            event=LogEvent.FLOW_SUCCEEDED.value,
            message="Successfully obtained OAuth tokens",
            data={"merchant_id": record.merchant_id, "access_token": mask_token(record.access_token)}
        ))
        session.completion.succeed(record)
        return HTMLResponse(render_page(
            "OAuth Tokens Generated",
            "OAuth Tokens Generated Successfully!",
            "Your Clover OAuth tokens have been generated and saved.",
            "You can now close this window and return to your application.",
        ))

    return app


class CallbackListener:
    """Runs a callback app on a loopback port with uvicorn."""

    def __init__(self, app: fastapi.FastAPI, host: str = "127.0.0.1"):
        self.app = app
        self.host = host
        self.port: Optional[int] = None
        self.serve_task: Optional[asyncio.Task] = None
        self._server: Optional[uvicorn.Server] = None

    @property
    def running(self) -> bool:
        return self.serve_task is not None and not self.serve_task.done()

    async def start(self, port: int) -> int:
        """Bind and start serving. Returns the bound port."""
        # Bind here so an unavailable port surfaces as an exception, not a uvicorn exit
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, port))
        except OSError as e:
            sock.close()
            error(LogRecord(
                event=LogEvent.LISTENER_ERROR.value,
                message=f"OAuth server error: cannot bind {self.host}:{port}: {e}",
                data={"port": port}
            ), exc=e)
            raise ListenerBindError(f"Could not start OAuth callback listener on port {port}: {e}") from e

        self.port = sock.getsockname()[1]
        config = uvicorn.Config(self.app, log_level="warning", access_log=False, lifespan="off")
        self._server = uvicorn.Server(config)
        self.serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self.serve_task.done():
                exc = None if self.serve_task.cancelled() else self.serve_task.exception()
                sock.close()
                raise ListenerBindError(f"OAuth callback listener failed to start: {exc}")
            await asyncio.sleep(0.01)

        info(LogRecord(
            event=LogEvent.LISTENER_STARTED.value,
            message=f"OAuth callback server running at http://localhost:{self.port}",
            data={"port": self.port}
        ))
        return self.port

    async def stop(self, grace_seconds: float = 0.0) -> None:
        """Stop serving after ``grace_seconds`` so a rendered page can finish loading."""
        if self._server is None:
            return

        server, task = self._server, self.serve_task
        self._server = None
        if grace_seconds > 0:
            await asyncio.sleep(grace_seconds)

        server.should_exit = True
        if task is not None:
            try:
                await task
            except Exception as e:
                warning(LogRecord(
                    event=LogEvent.LISTENER_ERROR.value,
                    message=f"OAuth callback listener ended with an error: {e}"
                ), exc=e)

        debug(LogRecord(
            event=LogEvent.LISTENER_STOPPED.value,
            message="OAuth server closed.",
            data={"port": self.port}
        ))
