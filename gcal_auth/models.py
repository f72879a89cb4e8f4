"""Value types shared by the auth core.

ClientCredentials identify the registered application, AuthConfig carries the
runtime policy of one manager, and TokenSet holds the provider-issued tokens.
All three are immutable: a refresh produces a new TokenSet rather than
mutating the current one.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

from google.oauth2.credentials import Credentials

from gcal_auth.validator import validate_token_payload

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"

DEFAULT_CREDENTIALS_DIR = "~/.gcal-mcp"
DEFAULT_REDIRECT_URI = "http://localhost:{port}/oauth2callback"
DEFAULT_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/calendar.readonly",
)
DEFAULT_CALLBACK_TIMEOUT = 300.0
DEFAULT_PORT_RANGE = (50000, 60000)

SUPPORTED_METHODS = ("oauth2",)
KNOWN_METHODS = ("oauth2", "service_account", "api_key")


@dataclass(frozen=True)
class ClientCredentials:
    """The application's identity with the provider."""

    client_id: str
    client_secret: str
    source: str = "explicit"

    def to_client_config(self, redirect_uri: str) -> dict[str, Any]:
        """Build the "installed app" client config google-auth-oauthlib expects."""
        return {
            "installed": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [redirect_uri],
            }
        }


@dataclass(frozen=True)
class AuthConfig:
    """Runtime policy for one AuthManager."""

    credentials_dir: str = DEFAULT_CREDENTIALS_DIR
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    method: str = "oauth2"
    redirect_uri: str = DEFAULT_REDIRECT_URI
    callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT
    port_range: tuple[int, int] = DEFAULT_PORT_RANGE
    open_browser: bool = True
    verify_stored_tokens: bool = False
    encrypt_tokens: bool = True
    client_id: str | None = None
    client_secret: str | None = None

    def redirect_uri_for(self, port: int) -> str:
        """Fill the redirect URI template with a concrete port."""
        return self.redirect_uri.format(port=port)

    @property
    def callback_path(self) -> str:
        return urlparse(self.redirect_uri_for(0)).path or "/"


@dataclass(frozen=True)
class TokenSet:
    """Provider-issued token material.

    ``expiry`` is always timezone-aware UTC (or None when the provider did not
    say). google-auth uses naive UTC datetimes, so conversions happen at the
    Credentials boundary only.
    """

    access_token: str
    refresh_token: str | None = None
    expiry: datetime | None = None
    scopes: tuple[str, ...] = field(default_factory=tuple)
    token_type: str = "Bearer"

    @property
    def expired(self) -> bool:
        if self.expiry is None:
            return False
        return self.expiry <= datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON shape written to the token file."""
        data: dict[str, Any] = {"access_token": self.access_token}
        if self.refresh_token:
            data["refresh_token"] = self.refresh_token
        if self.expiry is not None:
            data["expiry"] = self.expiry.isoformat()
        data["scope"] = " ".join(self.scopes)
        data["token_type"] = self.token_type
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenSet":
        """Parse a token file payload.

        Accepts both the current ``expiry`` (ISO-8601) field and the legacy
        ``expiry_date`` (epoch milliseconds) field.

        Raises:
            ValueError: If the payload is not a usable token set.
        """
        is_valid, err = validate_token_payload(data)
        if not is_valid:
            raise ValueError(err)

        expiry = None
        if data.get("expiry"):
            expiry = datetime.fromisoformat(data["expiry"])
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)
        elif data.get("expiry_date") is not None:
            expiry = datetime.fromtimestamp(int(data["expiry_date"]) / 1000, tz=timezone.utc)

        scope = data.get("scope") or ""
        if isinstance(scope, str):
            scopes = tuple(scope.split())
        else:
            scopes = tuple(scope)

        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            expiry=expiry,
            scopes=scopes,
            token_type=data.get("token_type") or "Bearer",
        )

    @classmethod
    def from_credentials(cls, creds: Credentials, fallback: "TokenSet | None" = None) -> "TokenSet":
        """Capture the token material of a google-auth Credentials object.

        Args:
            creds: Credentials after a code exchange or refresh.
            fallback: Previous TokenSet, used for fields a refresh response
                may omit (refresh token, scopes).
        """
        expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
        scopes = getattr(creds, "granted_scopes", None) or creds.scopes or ()
        if not scopes and fallback is not None:
            scopes = fallback.scopes
        refresh_token = creds.refresh_token
        if not refresh_token and fallback is not None:
            refresh_token = fallback.refresh_token
        return cls(
            access_token=creds.token,
            refresh_token=refresh_token,
            expiry=expiry,
            scopes=tuple(scopes),
        )

    def to_credentials(self, client: ClientCredentials) -> Credentials:
        """Install this token set into a live google-auth Credentials object."""
        expiry = None
        if self.expiry is not None:
            expiry = self.expiry.astimezone(timezone.utc).replace(tzinfo=None)
        return Credentials(
            token=self.access_token,
            refresh_token=self.refresh_token,
            token_uri=TOKEN_URI,
            client_id=client.client_id,
            client_secret=client.client_secret,
            scopes=list(self.scopes) or None,
            expiry=expiry,
        )
