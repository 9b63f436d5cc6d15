"""
Merchant data routes backed by the Clover REST API.
"""

from typing import Any, Awaitable, Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from clover_api import CloverApiClient, CloverAPIError
from clover_oauth import RefreshError, UnauthenticatedError


async def _call_clover(call: Awaitable[Any]) -> JSONResponse:
    """Await a client call and map its failures onto HTTP responses."""
    try:
        result = await call
    except UnauthenticatedError as e:
        return JSONResponse(status_code=401, content={"error": str(e)})
    except RefreshError as e:
        return JSONResponse(
            status_code=401,
            content={"error": str(e), "details": e.upstream_message}
        )
    except CloverAPIError as e:
        status_code = e.status_code if 400 <= e.status_code < 600 else 502
        return JSONResponse(status_code=status_code, content={"error": str(e)})
    return JSONResponse(content=result)


def create_merchant_router(client: CloverApiClient) -> APIRouter:
    """Create merchant router with Clover client dependency."""
    router = APIRouter(tags=["Merchant"])

    @router.get("/merchant")
    async def get_merchant_info() -> JSONResponse:
        return await _call_clover(client.get_merchant_info())

    @router.get("/inventory")
    async def list_inventory(
        query: Optional[str] = Query(None, description="Clover filter expression, e.g. name=Coffee"),
        offset: Optional[int] = Query(None, ge=0),
        limit: int = Query(100, ge=1, le=1000),
    ) -> JSONResponse:
        return await _call_clover(client.list_inventory(query=query, offset=offset, limit=limit))

    @router.get("/orders")
    async def list_orders(
        filter: Optional[str] = Query(None),
        start: Optional[str] = Query(None, description="Start of the createdTime window"),
        end: Optional[str] = Query(None, description="End of the createdTime window"),
        limit: int = Query(100, ge=1, le=1000),
    ) -> JSONResponse:
        return await _call_clover(client.list_orders(filter=filter, start=start, end=end, limit=limit))

    @router.get("/orders/{order_id}")
    async def get_order(order_id: str) -> JSONResponse:
        return await _call_clover(client.get_order(order_id))

    @router.get("/items/{item_id}")
    async def get_item(item_id: str) -> JSONResponse:
        return await _call_clover(client.get_item(item_id))

    return router
