"""Logging handlers and utility functions."""

import enum
import logging
import traceback
from typing import Optional

from .formatters import LogError, LogRecord


class LogEvent(enum.Enum):
    # Credential store
    CREDENTIALS_SAVED = "oauth_credentials_saved"
    CREDENTIALS_CLEARED = "oauth_credentials_cleared"
    CREDENTIALS_LOADED = "oauth_credentials_loaded"
    TOKEN_FILE_MISSING = "oauth_token_file_missing"
    TOKEN_FILE_UPDATED = "oauth_token_file_updated"
    TOKEN_FILE_UPDATE_FAILED = "oauth_token_file_update_failed"

    # Token exchange protocol
    TIER_ATTEMPT = "oauth_tier_attempt"
    TIER_SUCCEEDED = "oauth_tier_succeeded"
    TIER_FAILED = "oauth_tier_failed"
    EXCHANGE_FAILED = "oauth_exchange_failed"
    TOKEN_RESPONSE = "oauth_token_response"
    REFRESH_FAILED = "oauth_refresh_failed"
    TOKEN_REFRESHED = "oauth_token_refreshed"
    REFRESH_JOINED = "oauth_refresh_joined"

    # Callback listener and flow
    LISTENER_STARTED = "oauth_listener_started"
    LISTENER_STOPPED = "oauth_listener_stopped"
    LISTENER_ERROR = "oauth_listener_error"
    CALLBACK_RECEIVED = "oauth_callback_received"
    CALLBACK_DUPLICATE = "oauth_callback_duplicate"
    STATE_MISMATCH = "oauth_state_mismatch"
    MERCHANT_ID_BACKFILLED = "oauth_merchant_id_backfilled"
    EXPIRY_DEFAULTED = "oauth_expiry_defaulted"
    FLOW_STARTED = "oauth_flow_started"
    FLOW_AUTHORIZE_URL = "oauth_authorize_url"
    FLOW_INSTRUCTIONS = "oauth_flow_instructions"
    FLOW_SUCCEEDED = "oauth_flow_succeeded"
    FLOW_FAILED = "oauth_flow_failed"
    BROWSER_LAUNCH_FAILED = "oauth_browser_launch_failed"

    # Credential guard and auto refresh
    ENSURE_VALID_REFRESH = "oauth_ensure_valid_refresh"
    UNAUTHORIZED_RETRY = "oauth_unauthorized_retry"
    AUTO_REFRESH_STARTED = "oauth_auto_refresh_started"
    AUTO_REFRESH_SCHEDULED = "oauth_auto_refresh_scheduled"
    AUTO_REFRESH_FAILED = "oauth_auto_refresh_failed"
    AUTO_REFRESH_CANCELLED = "oauth_auto_refresh_cancelled"

    # Clover API
    API_REQUEST = "clover_api_request"
    API_ERROR = "clover_api_error"

    # Application
    CONFIG_LOADED = "config_loaded"
    CONFIG_INCOMPLETE = "config_incomplete"
    FASTAPI_STARTUP_COMPLETE = "fastapi_startup_complete"
    FASTAPI_SHUTDOWN = "fastapi_shutdown"
    HTTP_REQUEST = "http_request"


# Initialize logger - will be set up when module is initialized
_logger = None


def init_logger(app_name: str = "clover-merchant-gateway"):
    """Initialize the logger for this module."""
    global _logger
    _logger = logging.getLogger(app_name)


def _log(level: int, record: LogRecord, exc: Optional[Exception] = None) -> None:
    """Internal logging function."""
    if _logger is None:
        init_logger()

    if exc:
        record.error = LogError(
            name=type(exc).__name__,
            message=str(exc),
            stack_trace="".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
            args=exc.args if hasattr(exc, "args") else tuple(),
        )
        if not record.message:
            record.message = str(exc) or "An unspecified error occurred"

    _logger.log(level=level, msg=record.message, extra={"log_record": record})


def debug(record: LogRecord):
    """Log a debug message."""
    _log(logging.DEBUG, record)


def info(record: LogRecord):
    """Log an info message."""
    _log(logging.INFO, record)


def warning(record: LogRecord, exc: Optional[Exception] = None):
    """Log a warning message."""
    _log(logging.WARNING, record, exc=exc)


def error(record: LogRecord, exc: Optional[Exception] = None):
    """Log an error message."""
    _log(logging.ERROR, record, exc=exc)


def critical(record: LogRecord, exc: Optional[Exception] = None):
    """Log a critical message."""
    _log(logging.CRITICAL, record, exc=exc)
