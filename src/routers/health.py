"""
Health check routes for the Clover merchant gateway.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from clover_oauth import OAuthManager


def create_health_router(manager: OAuthManager, app_name: str, app_version: str) -> APIRouter:
    """Create health router with OAuth manager dependency."""
    router = APIRouter(tags=["Health"])

    @router.get("/", include_in_schema=False)
    async def root_health_check() -> JSONResponse:
        """Basic health check and information endpoint."""
        return JSONResponse(
            content={
                "service": app_name,
                "version": app_version,
                "status": "healthy",
                "authenticated": manager.get_credentials() is not None,
            }
        )

    @router.get("/health")
    async def health_check() -> JSONResponse:
        """Container health check endpoint"""
        if not manager.config.is_complete:
            return JSONResponse(
                content={"status": "unhealthy", "message": "Clover client credentials not configured"},
                status_code=503
            )

        return JSONResponse(content={
            "status": "healthy",
            "has_valid_tokens": manager.has_valid_tokens(),
            "flow_pending": manager.flow_pending,
        })

    return router
