"""
Clover OAuth module.

This module handles the OAuth 2.0 authorization-code flow for a Clover app.
It provides functionality for:
- Local callback listener and authorization URL generation
- Authorization code exchange over the v2 and legacy token endpoints
- Credential storage, expiry tracking and refresh
- Token persistence to a dotenv-style file
"""

from .config import AuthorizeUrlVariant, CloverConfig, StatePolicy
from .credentials import CredentialRecord, CredentialStore, TokenFile
from .errors import (
    OAuthError, ExchangeError, RefreshError, UnauthenticatedError,
    MissingCodeError, StateMismatchError, AuthorizationDeniedError,
    FlowAlreadyActiveError, FlowTimeoutError, ListenerBindError,
    IncompleteCredentialError
)
from .flow import AuthorizationFlowController, open_browser
from .manager import OAuthManager
from .protocol import (
    TokenExchangeProtocol, VersionedJsonTier, LegacyFormTier,
    build_authorize_url
)

__all__ = [
    "AuthorizeUrlVariant", "CloverConfig", "StatePolicy",
    "CredentialRecord", "CredentialStore", "TokenFile",
    "OAuthError", "ExchangeError", "RefreshError", "UnauthenticatedError",
    "MissingCodeError", "StateMismatchError", "AuthorizationDeniedError",
    "FlowAlreadyActiveError", "FlowTimeoutError", "ListenerBindError",
    "IncompleteCredentialError",
    "AuthorizationFlowController", "open_browser",
    "OAuthManager",
    "TokenExchangeProtocol", "VersionedJsonTier", "LegacyFormTier",
    "build_authorize_url",
]
