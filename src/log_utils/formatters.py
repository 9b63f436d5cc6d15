"""Custom logging formatters."""

import dataclasses
import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple


@dataclasses.dataclass
class LogError:
    name: str
    message: str
    stack_trace: Optional[str] = None
    args: Optional[Tuple[Any, ...]] = None


@dataclasses.dataclass
class LogRecord:
    event: str
    message: str
    request_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[LogError] = None


def mask_token(token: Optional[str], visible: int = 6) -> Optional[str]:
    """Return a log-safe preview of a bearer token."""
    if not token:
        return None
    if len(token) <= visible * 2:
        return "***"
    return f"{token[:visible]}...{token[-4:]}"


class ColoredConsoleFormatter(logging.Formatter):
    """Console formatter with color support and simplified output for CLI."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[95m', # Magenta
    }

    RESET = '\033[0m'

    # Data fields worth echoing on the console for failures
    ESSENTIAL_FIELDS = ('status_code', 'tier', 'port', 'merchant_id')

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        log_dict = self._get_simplified_log_dict(record)

        use_colors = (
            self.use_colors
            and hasattr(sys.stdout, 'isatty')
            and sys.stdout.isatty()
        )

        formatted_json = json.dumps(log_dict, ensure_ascii=False)
        if use_colors:
            color = self.COLORS.get(record.levelname, '')
            return f"{color}{formatted_json}{self.RESET}"
        return formatted_json

    def _get_simplified_log_dict(self, record: logging.LogRecord) -> dict:
        """Extract simplified log dictionary for console output."""
        log_payload = getattr(record, "log_record", None)
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")

        if not isinstance(log_payload, LogRecord):
            return {
                "time": timestamp,
                "level": record.levelname,
                "message": record.getMessage()
            }

        message = log_payload.message
        if len(message) > 200:
            message = message[:200] + "..."

        simplified = {
            "time": timestamp,
            "level": record.levelname,
            "event": log_payload.event,
            "message": message
        }

        if log_payload.request_id:
            simplified["req_id"] = log_payload.request_id[:8]

        if log_payload.error and record.levelname in ['ERROR', 'WARNING', 'CRITICAL']:
            simplified["error"] = log_payload.error.name
            if log_payload.error.message != log_payload.message:
                simplified["error_msg"] = log_payload.error.message[:100]

        if log_payload.data and record.levelname in ['ERROR', 'CRITICAL']:
            for field in self.ESSENTIAL_FIELDS:
                if field in log_payload.data:
                    simplified[field] = log_payload.data[field]

        return simplified


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        header = {
            "timestamp": datetime.fromtimestamp(
                record.created, timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        log_payload = getattr(record, "log_record", None)
        if isinstance(log_payload, LogRecord):
            header["detail"] = dataclasses.asdict(log_payload)
        else:
            header["message"] = record.getMessage()
            if record.exc_info:
                exc_type, exc_value, exc_tb = record.exc_info
                header["error"] = {
                    "name": exc_type.__name__ if exc_type else "UnknownError",
                    "message": str(exc_value),
                    "stack_trace": "".join(
                        traceback.format_exception(exc_type, exc_value, exc_tb)
                    ),
                    "args": exc_value.args if hasattr(exc_value, "args") else [],
                }
        return json.dumps(header, ensure_ascii=False, default=str)
