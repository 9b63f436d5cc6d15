"""Configuration for the Clover OAuth client."""

import enum
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

DEFAULT_BASE_URL = "https://apisandbox.dev.clover.com"
DEFAULT_CALLBACK_PORT = 4000
DEFAULT_CALLBACK_PATH = "/oauth-callback"


class AuthorizeUrlVariant(str, enum.Enum):
    """Which authorization endpoint the user is sent to."""
    LEGACY = "legacy"        # /oauth/authorize, works against every sandbox
    VERSIONED = "versioned"  # /oauth/v2/authorize


class StatePolicy(str, enum.Enum):
    """How a callback whose state does not match the session is treated."""
    LENIENT = "lenient"  # log and continue (app-install redirects may drop state)
    STRICT = "strict"    # reject the callback


@dataclass
class CloverConfig:
    """Settings for the OAuth lifecycle and the Clover REST client."""
    client_id: str = ""
    client_secret: str = ""
    base_url: str = DEFAULT_BASE_URL
    callback_host: str = "127.0.0.1"
    callback_port: int = DEFAULT_CALLBACK_PORT
    callback_path: str = DEFAULT_CALLBACK_PATH
    authorize_url_variant: AuthorizeUrlVariant = AuthorizeUrlVariant.LEGACY
    state_policy: StatePolicy = StatePolicy.LENIENT
    token_file: str = ".env"
    http_timeout: float = 30.0
    flow_timeout: float = 300.0  # 0 waits forever
    shutdown_grace_seconds: float = 3.0
    auto_refresh: bool = False
    refresh_margin_seconds: int = 300
    proxy: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")
        if not self.callback_path.startswith("/"):
            self.callback_path = "/" + self.callback_path
        self.authorize_url_variant = AuthorizeUrlVariant(self.authorize_url_variant)
        self.state_policy = StatePolicy(self.state_policy)

    @property
    def is_complete(self) -> bool:
        return bool(self.client_id) and bool(self.client_secret)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CloverConfig':
        """Build from a config-file mapping; unknown keys are kept in ``extra``."""
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs = {key: value for key, value in data.items() if key in known and value is not None}
        extra = {key: value for key, value in data.items() if key not in known}
        return cls(**kwargs, extra=extra)
