"""
OAuth-related API routes for the Clover merchant gateway.
"""

from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from clover_oauth import (
    OAuthManager, OAuthError, ExchangeError, RefreshError, UnauthenticatedError,
    MissingCodeError, StateMismatchError, AuthorizationDeniedError,
    FlowAlreadyActiveError, FlowTimeoutError, ListenerBindError
)
from clover_oauth.manager import format_duration
from log_utils import LogRecord, error, mask_token

# Most specific first
_FLOW_ERROR_STATUS = (
    (FlowAlreadyActiveError, 409),
    (ListenerBindError, 503),
    (FlowTimeoutError, 504),
    (AuthorizationDeniedError, 400),
    (StateMismatchError, 400),
    (MissingCodeError, 400),
    (ExchangeError, 502),
)


def flow_error_status(exc: OAuthError) -> int:
    for exc_type, status_code in _FLOW_ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code
    return 500


def create_oauth_router(manager: OAuthManager) -> APIRouter:
    """Create OAuth router with OAuth manager dependency."""
    router = APIRouter(prefix="/oauth", tags=["OAuth"])

    def _not_configured() -> Optional[JSONResponse]:
        if manager.config.is_complete:
            return None
        return JSONResponse(
            status_code=503,
            content={"error": "CLOVER_CLIENT_ID and CLOVER_CLIENT_SECRET must be configured"}
        )

    @router.post("/flow")
    async def initiate_oauth_flow(port: Optional[int] = Query(None, ge=0, le=65535)) -> JSONResponse:
        """
        Run the interactive authorization flow.

        Starts the local callback listener, opens the Clover authorization page
        and waits until the merchant approves (or the flow fails / times out).
        """
        unavailable = _not_configured()
        if unavailable:
            return unavailable

        try:
            record = await manager.start_flow(port)
        except OAuthError as e:
            status_code = flow_error_status(e)
            error(LogRecord(
                event="oauth_flow_request_failed",
                message=f"OAuth flow failed: {e}",
                data={"status_code": status_code}
            ))
            content = {"error": str(e)}
            if e.upstream_message:
                content["details"] = e.upstream_message
            return JSONResponse(status_code=status_code, content=content)

        return JSONResponse(content={
            "status": "success",
            "message": "Authorization successful",
            "merchant_id": record.merchant_id,
            "access_token_expiry": record.access_token_expiry,
            "refresh_token_expiry": record.refresh_token_expiry,
            "access_token_preview": mask_token(record.access_token),
        })

    @router.get("/status")
    async def get_oauth_status() -> JSONResponse:
        """Get status of the stored credential without exposing secrets"""
        return JSONResponse(content=manager.get_status())

    @router.post("/refresh")
    async def refresh_oauth_token() -> JSONResponse:
        """Manually refresh the access token"""
        unavailable = _not_configured()
        if unavailable:
            return unavailable

        try:
            record = await manager.refresh()
        except UnauthenticatedError as e:
            return JSONResponse(status_code=401, content={"error": str(e)})
        except RefreshError as e:
            error(LogRecord(
                event="oauth_manual_refresh_error",
                message=f"Error during manual token refresh: {e}"
            ))
            content = {"error": str(e)}
            if e.upstream_message:
                content["details"] = e.upstream_message
            return JSONResponse(status_code=401, content=content)

        response_data = {
            "status": "success",
            "message": "Token refreshed successfully",
            "merchant_id": record.merchant_id,
            "access_token_expiry": record.access_token_expiry,
            "access_token_preview": mask_token(record.access_token),
        }
        if record.access_token_expiry is not None:
            expires_in = max(0, record.access_token_expiry - manager.clock())
            response_data["expires_in_seconds"] = int(expires_in)
            response_data["expires_in_human"] = format_duration(expires_in)
        return JSONResponse(content=response_data)

    @router.delete("/tokens")
    async def clear_oauth_tokens() -> JSONResponse:
        """Forget the stored credential (the token file is left as is)"""
        manager.clear()
        return JSONResponse(content={
            "status": "success",
            "message": "Credential cleared"
        })

    return router
