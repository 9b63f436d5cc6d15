"""Per-flow authorization session and its one-shot completion signal."""

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Optional

from .credentials import CredentialRecord


class SessionState(enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Completion:
    """Single-resolution result slot.

    Exactly one of ``succeed``/``fail`` takes effect; later calls return False
    and change nothing. Must be created while an event loop is running.
    """

    def __init__(self):
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.state = SessionState.PENDING

    @property
    def pending(self) -> bool:
        return self.state is SessionState.PENDING

    def succeed(self, record: CredentialRecord) -> bool:
        if not self.pending:
            return False
        self.state = SessionState.SUCCEEDED
        self.future.set_result(record)
        return True

    def fail(self, exc: BaseException) -> bool:
        if not self.pending:
            return False
        self.state = SessionState.FAILED
        self.future.set_exception(exc)
        return True

    async def wait(self) -> CredentialRecord:
        return await asyncio.shield(self.future)


@dataclass
class AuthorizationSession:
    """State owned by one authorization flow from start to resolution."""
    state: str
    port: int
    completion: Completion = field(default_factory=Completion)
    callback_delivered: bool = False
    exchange_started: bool = False
    authorize_url: Optional[str] = None
    redirect_uri: Optional[str] = None
