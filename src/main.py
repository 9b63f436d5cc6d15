"""
Clover Merchant Gateway - Main Application Entry Point

FastAPI application that owns the Clover OAuth credential lifecycle and
exposes merchant, inventory and order lookups on top of it.
"""

import argparse
import asyncio
import os
import sys
import time
import yaml
from contextlib import asynccontextmanager
from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Optional

import fastapi
import uvicorn
from dotenv import load_dotenv
from fastapi import Request
from fastapi.responses import JSONResponse
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

# Configure path for imports
current_dir = os.path.dirname(os.path.abspath(__file__))
if current_dir not in sys.path:
    sys.path.insert(0, current_dir)

from clover_api import CloverApiClient
from clover_oauth import CloverConfig, OAuthError, OAuthManager
from log_utils import (
    LogRecord, LogEvent, ColoredConsoleFormatter, JSONFormatter,
    init_logger, debug, error, info, warning
)

from routers.health import create_health_router
from routers.merchant import create_merchant_router
from routers.oauth import create_oauth_router

load_dotenv()

# Rich console for startup display
_console = Console()

# Environment variables win over the clover: section of the config file
ENV_OVERRIDES = {
    "CLOVER_CLIENT_ID": "client_id",
    "CLOVER_CLIENT_SECRET": "client_secret",
    "CLOVER_BASE_URL": "base_url",
}

# ===== CONFIGURATION =====

def _resolve_path(path: str) -> Path:
    if os.path.isabs(path):
        return Path(path)
    project_root = Path(__file__).parent.parent
    return project_root / path


def load_config(config_path: str = "config.yaml") -> dict:
    """Load full configuration from file."""
    try:
        with open(_resolve_path(config_path), 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        _console.print(f"[yellow]Warning: Failed to load config file {config_path}: {e}[/yellow]")
        return {}


class Settings:
    """Application settings: defaults, then config.yaml, then environment."""

    def __init__(self, config_path: str = "config.yaml"):
        # Default values
        self.log_level: str = "INFO"
        self.log_file_path: str = ""
        self.log_color: bool = True
        self.host: str = "127.0.0.1"
        self.port: int = 8080
        self.app_name: str = "clover-merchant-gateway"
        self.app_title: str = "Clover Merchant Gateway"
        self.app_version: str = "0.1.0"
        self.config_path = config_path
        self.clover: CloverConfig = CloverConfig()

        self.load_from_config(load_config(config_path))
        self.apply_env_overrides(os.environ)

    def load_from_config(self, config: Dict[str, Any]):
        """Update settings from the settings: and clover: sections."""
        settings_config = config.get('settings') or {}
        for key, value in settings_config.items():
            if hasattr(self, key) and key != "clover":
                # Log file paths are relative to the project root
                if key == "log_file_path" and value:
                    value = str(_resolve_path(value))
                setattr(self, key, value)

        clover_config = config.get('clover') or {}
        self.clover = CloverConfig.from_dict(clover_config)

    def apply_env_overrides(self, environ) -> None:
        for env_name, field_name in ENV_OVERRIDES.items():
            value = environ.get(env_name)
            if value:
                setattr(self.clover, field_name, value)
        # base_url may have been replaced after __post_init__ ran
        self.clover.base_url = self.clover.base_url.rstrip("/")


def setup_logging(settings: Settings) -> dict:
    """Setup logging configuration."""
    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "colored_console": {
                "()": ColoredConsoleFormatter,
                "use_colors": settings.log_color,
            },
            "json": {"()": JSONFormatter},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": settings.log_level,
                "formatter": "colored_console",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            settings.app_name: {
                "level": settings.log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
    }

    # Add file handler if configured
    if settings.log_file_path:
        log_config["handlers"]["file"] = {
            "class": "logging.FileHandler",
            "level": settings.log_level,
            "formatter": "json",
            "filename": settings.log_file_path,
            "mode": "a",
            "encoding": "utf-8",
        }
        log_config["loggers"][settings.app_name]["handlers"].append("file")

    dictConfig(log_config)
    return log_config


def build_manager(settings: Settings) -> OAuthManager:
    """Create the OAuth manager and pick up credentials from a previous run."""
    if not settings.clover.is_complete:
        warning(LogRecord(
            event=LogEvent.CONFIG_INCOMPLETE.value,
            message="CLOVER_CLIENT_ID / CLOVER_CLIENT_SECRET not set, OAuth flow and refresh are unavailable"
        ))
    manager = OAuthManager(settings.clover)
    manager.load_persisted()
    return manager

# ===== FASTAPI APPLICATION =====

@asynccontextmanager
async def lifespan(app: fastapi.FastAPI):
    """FastAPI lifespan event handler."""
    manager: OAuthManager = app.state.oauth_manager
    info(LogRecord(
        event=LogEvent.FASTAPI_STARTUP_COMPLETE.value,
        message="FastAPI application startup complete"
    ))

    if manager.config.auto_refresh:
        manager.start_auto_refresh()

    yield

    # Shutdown
    info(LogRecord(
        event=LogEvent.FASTAPI_SHUTDOWN.value,
        message="FastAPI application shutting down"
    ))
    await manager.stop_auto_refresh()
    await manager.flow.wait_closed()
    await app.state.clover_client.aclose()


def create_app(config_path: str = "config.yaml", settings: Optional[Settings] = None,
               manager: Optional[OAuthManager] = None) -> fastapi.FastAPI:
    """Create FastAPI application with its own settings and OAuth manager."""
    local_settings = settings or Settings(config_path)

    # Initialize logging
    init_logger(local_settings.app_name)
    setup_logging(local_settings)
    info(LogRecord(
        event=LogEvent.CONFIG_LOADED.value,
        message=f"Configuration loaded from {local_settings.config_path}",
        data={"base_url": local_settings.clover.base_url, "callback_port": local_settings.clover.callback_port}
    ))

    local_manager = manager or build_manager(local_settings)
    clover_client = CloverApiClient(local_manager)

    app = fastapi.FastAPI(
        title=local_settings.app_title,
        version=local_settings.app_version,
        description="OAuth credential lifecycle and read-only API gateway for a Clover merchant",
        lifespan=lifespan,
    )

    # Store components in app state for access by handlers
    app.state.settings = local_settings
    app.state.oauth_manager = local_manager
    app.state.clover_client = clover_client

    # Register routers
    app.include_router(create_oauth_router(local_manager))
    app.include_router(create_merchant_router(clover_client))
    app.include_router(create_health_router(local_manager, local_settings.app_title, local_settings.app_version))

    # Exception handlers
    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        error(LogRecord(
            event="unhandled_oauth_error",
            message=f"{request.method} {request.url.path} failed: {exc}"
        ))
        return JSONResponse(status_code=500, content={"error": str(exc)})

    # Request logging middleware
    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        debug(LogRecord(
            event=LogEvent.HTTP_REQUEST.value,
            message=f"{request.method} {request.url.path}",
            data={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time": round(process_time, 3),
            },
        ))

        return response

    return app

# ===== STARTUP BANNER =====

def display_startup_banner(settings: Settings, manager: OAuthManager):
    """Display startup banner with configuration info."""
    clover = settings.clover
    status = manager.get_status()

    if status["has_valid_tokens"]:
        credential_text = (f"merchant {status.get('merchant_id')}, expires in "
                           f"{status.get('expires_in_human', 'unknown')}", "bold green")
    elif status["authenticated"]:
        credential_text = ("stored but expired (will refresh on use)", "yellow")
    else:
        credential_text = ("none (POST /oauth/flow or --authorize)", "bold red")

    log_file_display = "Disabled"
    if settings.log_file_path:
        log_file_display = Path(settings.log_file_path).name

    config_text = Text.assemble(
        ("   Version       : ", "default"),
        (f"v{settings.app_version}", "bold cyan"),
        ("\n   Clover API    : ", "default"),
        (clover.base_url, "default"),
        ("\n   Client ID     : ", "default"),
        (clover.client_id or "not configured", "default" if clover.client_id else "bold red"),
        ("\n   Callback      : ", "default"),
        (f"http://localhost:{clover.callback_port}{clover.callback_path}", "default"),
        ("\n   Token File    : ", "default"),
        (clover.token_file or "Disabled", "dim"),
        ("\n   Credential    : ", "default"),
        credential_text,
        ("\n   Auto Refresh  : ", "default"),
        ("enabled" if clover.auto_refresh else "disabled", "green" if clover.auto_refresh else "dim"),
        ("\n   Log Level     : ", "default"),
        (settings.log_level.upper(), "yellow"),
        ("\n   Log File      : ", "default"),
        (log_file_display, "dim"),
        ("\n   Listening on  : ", "default"),
        (f"http://{settings.host}:{settings.port}", "default")
    )

    _console.print(Panel(
        config_text,
        title=f"{settings.app_title} Configuration",
        border_style="blue",
        expand=False,
    ))
    _console.print(Rule("Starting uvicorn server ...", style="dim blue"))

# ===== COMMAND LINE INTERFACE =====

def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Clover Merchant Gateway')
    parser.add_argument(
        '--config',
        type=str,
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '--port',
        type=int,
        help='Port to run the server on (overrides config file)'
    )
    parser.add_argument(
        '--host',
        type=str,
        help='Host to bind the server to (overrides config file)'
    )
    parser.add_argument(
        '--authorize',
        action='store_true',
        help='Run the OAuth authorization flow once and exit'
    )
    return parser.parse_args(argv)


async def authorize_once(manager: OAuthManager) -> int:
    """Run a single authorization flow from the command line."""
    try:
        record = await manager.start_flow()
    except OAuthError as e:
        _console.print(f"[bold red]Authorization failed:[/bold red] {e}")
        return 1
    finally:
        # Let the callback page finish loading before the event loop exits
        await manager.flow.wait_closed()
    _console.print(f"[bold green]Authorized merchant {record.merchant_id}[/bold green]")
    return 0


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    settings = Settings(args.config)

    # Apply command line overrides
    if args.port:
        settings.port = args.port
    if args.host:
        settings.host = args.host

    init_logger(settings.app_name)
    log_config = setup_logging(settings)
    manager = build_manager(settings)

    if args.authorize:
        if not settings.clover.is_complete:
            _console.print("[bold red]CLOVER_CLIENT_ID and CLOVER_CLIENT_SECRET must be set[/bold red]")
            sys.exit(2)
        sys.exit(asyncio.run(authorize_once(manager)))

    app = create_app(settings=settings, manager=manager)
    display_startup_banner(settings, manager)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_config=log_config,
    )


if __name__ == "__main__":
    main()
