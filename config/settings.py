"""Global Settings - Loads auth configuration from environment variables.

Centralizes all configuration so the auth core doesn't read env vars
directly (client identity is the exception: CredentialResolver owns its
own lookup chain).
"""

import os
from dataclasses import dataclass, field, replace
from typing import Any

from dotenv import load_dotenv

from gcal_auth.models import (
    DEFAULT_CALLBACK_TIMEOUT,
    DEFAULT_CREDENTIALS_DIR,
    DEFAULT_SCOPES,
    AuthConfig,
)

load_dotenv()

FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class Settings:
    """Application-wide settings loaded from environment variables."""

    auth_method: str = "oauth2"
    config_dir: str = DEFAULT_CREDENTIALS_DIR
    tenant_id: str | None = None
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))

    # Interactive flow
    callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT
    open_browser: bool = True

    # Opt-in live check of stored tokens at startup
    verify_tokens: bool = False


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() not in FALSE_VALUES


def load_settings() -> Settings:
    """Load settings from environment variables with sensible defaults.

    Environment variables:
        GCAL_MCP_AUTH_METHOD: Auth method (only "oauth2" is implemented)
        GCAL_MCP_CONFIG_DIR: Directory for client secrets, tokens and logs
        GCAL_MCP_TENANT_ID: Tenant namespace for token encryption
        GCAL_MCP_SCOPES: Comma-separated OAuth scopes
        GCAL_MCP_CALLBACK_TIMEOUT: Seconds to wait for the browser callback
        GCAL_MCP_OPEN_BROWSER: Set to 0/false to only print the URL
        GCAL_MCP_VERIFY_TOKENS: Set to 1/true to verify stored tokens on startup

    Returns:
        A populated Settings instance.
    """
    scopes_env = os.getenv("GCAL_MCP_SCOPES", "")
    scopes = [s.strip() for s in scopes_env.split(",") if s.strip()] or list(DEFAULT_SCOPES)

    return Settings(
        auth_method=os.getenv("GCAL_MCP_AUTH_METHOD", "oauth2"),
        config_dir=os.getenv("GCAL_MCP_CONFIG_DIR", DEFAULT_CREDENTIALS_DIR),
        tenant_id=os.getenv("GCAL_MCP_TENANT_ID") or None,
        scopes=scopes,
        callback_timeout=float(os.getenv("GCAL_MCP_CALLBACK_TIMEOUT", str(DEFAULT_CALLBACK_TIMEOUT))),
        open_browser=_env_flag("GCAL_MCP_OPEN_BROWSER", True),
        verify_tokens=_env_flag("GCAL_MCP_VERIFY_TOKENS", False),
    )


def build_auth_config(settings: Settings, **overrides: Any) -> AuthConfig:
    """Translate Settings into an immutable AuthConfig.

    Args:
        settings: Loaded settings.
        **overrides: AuthConfig fields to override (e.g. client_id,
            client_secret from CLI flags). None values are ignored.

    Returns:
        The AuthConfig for an AuthManager.
    """
    config = AuthConfig(
        method=settings.auth_method,
        credentials_dir=settings.config_dir,
        scopes=tuple(settings.scopes),
        callback_timeout=settings.callback_timeout,
        open_browser=settings.open_browser,
        verify_stored_tokens=settings.verify_tokens,
    )
    overrides = {k: v for k, v in overrides.items() if v is not None}
    return replace(config, **overrides) if overrides else config
