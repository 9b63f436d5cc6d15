"""Error types raised by the OAuth token lifecycle."""

from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .protocol import TierFailure


class OAuthError(Exception):
    """Base class for OAuth failures. Carries the upstream status/message when known."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 upstream_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.upstream_message = upstream_message


class _TierExhaustedError(OAuthError):
    """Every protocol tier failed; the individual failures are kept in order."""

    action = "request"

    def __init__(self, failures: List["TierFailure"], message: Optional[str] = None):
        last = failures[-1] if failures else None
        status_code = last.status_code if last else None
        upstream_message = last.message if last else None
        if message is None:
            detail = "; ".join(str(failure) for failure in failures) or "no tiers configured"
            message = f"OAuth {self.action} failed on all tiers: {detail}"
        super().__init__(message, status_code=status_code, upstream_message=upstream_message)
        self.failures = list(failures)


class ExchangeError(_TierExhaustedError):
    """The authorization code could not be exchanged. Terminal for the session."""

    action = "code exchange"


class RefreshError(_TierExhaustedError):
    """The refresh token was rejected. The user must run the authorization flow again."""

    action = "token refresh"


class UnauthenticatedError(OAuthError):
    """No usable credential and no refresh token."""


class MissingCodeError(OAuthError):
    """The authorization redirect arrived without a code."""


class StateMismatchError(OAuthError):
    """The redirect state did not match the session (strict state policy only)."""


class AuthorizationDeniedError(OAuthError):
    """The authorization server redirected back with an error."""


class FlowAlreadyActiveError(OAuthError):
    """An authorization flow is already pending on this manager."""


class FlowTimeoutError(OAuthError):
    """No callback arrived before the flow timeout."""


class ListenerBindError(OAuthError):
    """The local callback listener could not bind or died while serving."""


class IncompleteCredentialError(OAuthError):
    """A credential record without an access token or merchant id was offered to the store."""
