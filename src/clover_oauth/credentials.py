"""
Credential record and store for the Clover OAuth lifecycle.

The store holds at most one credential record for the process. It is owned
by the OAuthManager and handed to the components that need it; nothing here
is module-global. Successful writes are mirrored to a dotenv-style token file
so a restart can pick the credential back up.
"""

import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from dotenv import dotenv_values, set_key

from log_utils import LogEvent, LogRecord, debug, error, info, mask_token

from .errors import IncompleteCredentialError

ACCESS_TOKEN_DEFAULT_TTL = 3600
REFRESH_TOKEN_DEFAULT_TTL = 30 * 86400

# Keys written to the token file
API_KEY_VAR = "CLOVER_API_KEY"
MERCHANT_ID_VAR = "CLOVER_MERCHANT_ID"
REFRESH_TOKEN_VAR = "CLOVER_REFRESH_TOKEN"
ACCESS_EXPIRY_VAR = "CLOVER_ACCESS_TOKEN_EXPIRY"
REFRESH_EXPIRY_VAR = "CLOVER_REFRESH_TOKEN_EXPIRY"


@dataclass
class CredentialRecord:
    """Normalized OAuth credential for a single merchant"""
    access_token: str
    merchant_id: str
    refresh_token: str = ""
    access_token_expiry: Optional[int] = None  # Unix timestamp, None when unknown
    refresh_token_expiry: Optional[int] = None  # Unix timestamp, None when unknown

    def is_complete(self) -> bool:
        return bool(self.access_token) and bool(self.merchant_id)

    def is_access_token_expired(self, now: Optional[float] = None) -> bool:
        """An unknown expiry never counts as expired."""
        if self.access_token_expiry is None:
            return False
        if now is None:
            now = time.time()
        return now >= self.access_token_expiry

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "merchant_id": self.merchant_id,
            "access_token_expiry": self.access_token_expiry,
            "refresh_token_expiry": self.refresh_token_expiry,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CredentialRecord':
        """Create from dictionary"""
        return cls(
            access_token=data["access_token"],
            merchant_id=data["merchant_id"],
            refresh_token=data.get("refresh_token") or "",
            access_token_expiry=data.get("access_token_expiry"),
            refresh_token_expiry=data.get("refresh_token_expiry"),
        )


def _parse_timestamp(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


class TokenFile:
    """Key/value text mirror of the current credential (dotenv format)."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def write(self, record: CredentialRecord) -> bool:
        """Update the credential keys in place. Unrelated keys are left alone."""
        if not self.exists():
            debug(LogRecord(
                event=LogEvent.TOKEN_FILE_MISSING.value,
                message=f"No token file found at {self.path}, skipping persistence"
            ))
            return False

        values = {
            API_KEY_VAR: record.access_token,
            MERCHANT_ID_VAR: record.merchant_id,
            REFRESH_TOKEN_VAR: record.refresh_token,
            ACCESS_EXPIRY_VAR: str(record.access_token_expiry) if record.access_token_expiry else "",
            REFRESH_EXPIRY_VAR: str(record.refresh_token_expiry) if record.refresh_token_expiry else "",
        }

        try:
            # Empty fields are written too so a stale value from an earlier record never survives
            for key, value in values.items():
                set_key(str(self.path), key, value, quote_mode="never")
        except OSError as e:
            error(LogRecord(
                event=LogEvent.TOKEN_FILE_UPDATE_FAILED.value,
                message=f"Error updating token file {self.path}: {e}"
            ), exc=e)
            return False

        debug(LogRecord(
            event=LogEvent.TOKEN_FILE_UPDATED.value,
            message=f"Updated {self.path} with the new tokens"
        ))
        return True

    def read(self) -> Optional[CredentialRecord]:
        """Read a complete credential back from the file, if there is one."""
        if not self.exists():
            return None

        values = dotenv_values(self.path)
        record = CredentialRecord(
            access_token=values.get(API_KEY_VAR) or "",
            merchant_id=values.get(MERCHANT_ID_VAR) or "",
            refresh_token=values.get(REFRESH_TOKEN_VAR) or "",
            access_token_expiry=_parse_timestamp(values.get(ACCESS_EXPIRY_VAR)),
            refresh_token_expiry=_parse_timestamp(values.get(REFRESH_EXPIRY_VAR)),
        )
        return record if record.is_complete() else None


class CredentialStore:
    """Holds the current credential record.

    Reads are lock-protected snapshots; writes happen only on successful
    exchange or refresh. The lock keeps a single writer when the store is
    shared with threads outside the event loop.
    """

    def __init__(self, token_file: Optional[TokenFile] = None):
        self._record: Optional[CredentialRecord] = None
        self._lock = threading.Lock()
        self.token_file = token_file

    def get(self) -> Optional[CredentialRecord]:
        with self._lock:
            return self._record

    def save(self, record: CredentialRecord) -> CredentialRecord:
        if not record.is_complete():
            raise IncompleteCredentialError(
                "Refusing to store a credential without both an access token and a merchant id"
            )

        with self._lock:
            self._record = record

        info(LogRecord(
            event=LogEvent.CREDENTIALS_SAVED.value,
            message=f"Stored credentials for merchant {record.merchant_id}",
            data={
                "merchant_id": record.merchant_id,
                "access_token": mask_token(record.access_token),
                "access_token_expiry": record.access_token_expiry,
                "refresh_token_expiry": record.refresh_token_expiry,
            }
        ))

        # File I/O happens outside the lock
        if self.token_file is not None:
            self.token_file.write(record)

        return record

    def clear(self) -> None:
        with self._lock:
            self._record = None
        info(LogRecord(
            event=LogEvent.CREDENTIALS_CLEARED.value,
            message="Cleared stored credentials"
        ))

    def load(self) -> Optional[CredentialRecord]:
        """Restore the credential mirrored by a previous run."""
        if self.token_file is None:
            return None

        record = self.token_file.read()
        if record is None:
            return None

        with self._lock:
            self._record = record
        info(LogRecord(
            event=LogEvent.CREDENTIALS_LOADED.value,
            message=f"Loaded credentials for merchant {record.merchant_id} from {self.token_file.path}"
        ))
        return record

    def has_valid_tokens(self, now: Optional[float] = None) -> bool:
        record = self.get()
        if record is None or not record.is_complete():
            return False
        return not record.is_access_token_expired(now)
