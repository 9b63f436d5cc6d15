"""
Credential-aware HTTP client.

Every request first asks the OAuthManager for a valid access token and sends
it as a bearer header. A 401 answer triggers exactly one refresh and one
retry; if the retry is rejected too, that response goes back to the caller
untouched.
"""

from typing import Any, Dict, Optional

import httpx

from clover_oauth import OAuthManager
from log_utils import LogEvent, LogRecord, warning


class AuthorizedClient:
    """httpx.AsyncClient wrapper that keeps the Clover bearer token fresh."""

    def __init__(self, manager: OAuthManager, base_url: Optional[str] = None,
                 timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.manager = manager
        config = manager.config
        client_kwargs: Dict[str, Any] = {
            "base_url": (base_url or config.base_url).rstrip("/"),
            "timeout": timeout if timeout is not None else config.http_timeout,
            "headers": {"Accept": "application/json"},
        }
        if config.proxy:
            client_kwargs["proxy"] = config.proxy
        if transport is not None:
            client_kwargs["transport"] = transport
        self._client = httpx.AsyncClient(**client_kwargs)

    async def __aenter__(self) -> 'AuthorizedClient':
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, url: str, token: str, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token}"
        return await self._client.request(method, url, headers=headers, **kwargs)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        token = await self.manager.ensure_valid()
        response = await self._send(method, url, token, **kwargs)
        if response.status_code != 401:
            return response

        warning(LogRecord(
            event=LogEvent.UNAUTHORIZED_RETRY.value,
            message=f"{method} {url} was rejected with 401, refreshing token and retrying once",
            data={"status_code": 401}
        ))
        # A failed refresh propagates: there is nothing left to retry with
        record = await self.manager.refresh()
        return await self._send(method, url, record.access_token, **kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)
