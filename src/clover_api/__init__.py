"""Clover REST API access built on the OAuth credential manager."""

from .authorized import AuthorizedClient
from .client import CloverApiClient, decode_jwt_claims
from .errors import CloverAPIError

__all__ = ["AuthorizedClient", "CloverApiClient", "CloverAPIError", "decode_jwt_claims"]
