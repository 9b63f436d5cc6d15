"""Errors raised by the Clover REST client."""

from typing import Optional

import httpx


class CloverAPIError(Exception):
    """A Clover REST call returned a non-2xx response."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"Clover API error: {status_code} {message}")
        self.status_code = status_code
        self.message = message

    @classmethod
    def from_response(cls, response: httpx.Response) -> 'CloverAPIError':
        message: Optional[str] = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("message"), str):
            message = body["message"]
        return cls(response.status_code, message or response.text[:200] or response.reason_phrase)

    @classmethod
    def from_transport_error(cls, exc: httpx.HTTPError) -> 'CloverAPIError':
        """Map a request that never got a response to a gateway error."""
        detail = str(exc) or type(exc).__name__
        if isinstance(exc, httpx.TimeoutException):
            return cls(504, f"Request timed out: {detail}")
        return cls(502, f"Request failed: {detail}")
