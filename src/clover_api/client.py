"""
Clover API Client

Thin read-only client for the Clover v3 REST API. All calls are scoped to the
merchant of the stored credential and go through AuthorizedClient.
"""

import base64
import json
from typing import Any, Dict, Optional

import httpx

from clover_oauth import CredentialRecord, OAuthManager, OAuthError, UnauthenticatedError
from log_utils import LogEvent, LogRecord, debug, error

from .authorized import AuthorizedClient
from .errors import CloverAPIError


def decode_jwt_claims(token: str) -> Optional[Dict[str, Any]]:
    """Return the (unverified) payload of a JWT-shaped token, or None."""
    parts = token.split(".")
    if len(parts) < 2:
        return None
    payload = parts[1]
    padded = payload + "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(padded))
    except ValueError:
        return None
    return claims if isinstance(claims, dict) else None


class CloverApiClient:
    """Merchant, inventory and order lookups for the authenticated merchant"""

    def __init__(self, manager: OAuthManager, http: Optional[AuthorizedClient] = None):
        self.manager = manager
        self.http = http or AuthorizedClient(manager)

    async def aclose(self) -> None:
        await self.http.aclose()

    def has_valid_credentials(self) -> bool:
        return self.manager.has_valid_tokens()

    async def initiate_oauth_flow(self, port: Optional[int] = None) -> CredentialRecord:
        return await self.manager.start_flow(port)

    async def _ensure_credentials(self) -> str:
        """Check the credential before a call and return its merchant id."""
        record = self.manager.get_credentials()
        if record is None or not record.access_token:
            raise UnauthenticatedError("API key is required. Use initiate_oauth_flow to obtain it.")
        if not record.merchant_id:
            raise UnauthenticatedError(
                "Merchant ID is required. Use initiate_oauth_flow with a valid merchant account."
            )

        # Refreshes the token if needed
        await self.manager.ensure_valid()
        return self.manager.get_credentials().merchant_id

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        query = {key: value for key, value in (params or {}).items() if value is not None}
        debug(LogRecord(
            event=LogEvent.API_REQUEST.value,
            message=f"API Request: GET {path}",
            data={"params": query}
        ))

        try:
            response = await self.http.get(path, params=query)
        except httpx.HTTPError as e:
            exc = CloverAPIError.from_transport_error(e)
            error(LogRecord(
                event=LogEvent.API_ERROR.value,
                message=str(exc),
                data={"status_code": exc.status_code, "path": path}
            ))
            raise exc from e

        if not response.is_success:
            exc = CloverAPIError.from_response(response)
            error(LogRecord(
                event=LogEvent.API_ERROR.value,
                message=str(exc),
                data={"status_code": response.status_code, "path": path}
            ))
            raise exc
        return response.json()

    async def get_merchant_info(self) -> Dict[str, Any]:
        merchant_id = await self._ensure_credentials()
        return await self._get(f"/v3/merchants/{merchant_id}")

    async def list_inventory(self, query: Optional[str] = None, offset: Optional[int] = None,
                             limit: int = 100) -> Dict[str, Any]:
        merchant_id = await self._ensure_credentials()
        return await self._get(
            f"/v3/merchants/{merchant_id}/items",
            {"filter": query, "offset": offset, "limit": limit},
        )

    async def list_orders(self, filter: Optional[str] = None, start: Optional[str] = None,
                          end: Optional[str] = None, limit: int = 100) -> Dict[str, Any]:
        merchant_id = await self._ensure_credentials()
        return await self._get(
            f"/v3/merchants/{merchant_id}/orders",
            {"filter": filter, "start": start, "end": end, "limit": limit},
        )

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        merchant_id = await self._ensure_credentials()
        return await self._get(f"/v3/merchants/{merchant_id}/orders/{order_id}")

    async def get_item(self, item_id: str) -> Dict[str, Any]:
        merchant_id = await self._ensure_credentials()
        return await self._get(f"/v3/merchants/{merchant_id}/items/{item_id}")

    async def get_app_id(self) -> Optional[str]:
        """App UUID from the access token claims, falling back to the client id."""
        try:
            token = await self.manager.ensure_valid()
        except OAuthError as e:
            error(LogRecord(
                event=LogEvent.API_ERROR.value,
                message=f"Error getting app ID: {e}"
            ))
            return None

        claims = decode_jwt_claims(token)
        if claims and claims.get("app_uuid"):
            return claims["app_uuid"]
        return self.manager.client_id
