"""Token lifecycle manager.

AuthManager decides, per call, whether to reuse stored tokens, refresh them,
or run a fresh interactive flow, and owns the live google-auth Credentials
object handed to API clients.

State machine (per instance):

    UNAUTHENTICATED -> (stored tokens found) -> AUTHENTICATED
    UNAUTHENTICATED -> (none stored) -> FLOW_IN_PROGRESS -> AUTHENTICATED | FAILED
    AUTHENTICATED -> refresh() -> REFRESHING -> AUTHENTICATED | FAILED
    AUTHENTICATED -> clear() -> UNAUTHENTICATED

FAILED is not terminal; the next authenticate() starts a new flow.

Stored tokens are trusted without a verification round-trip unless
AuthConfig.verify_stored_tokens is set; a revoked token then surfaces on
first API use instead of at startup.
"""

import logging
import threading
from concurrent.futures import Future
from enum import Enum
from typing import Any

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from config.settings import Settings, build_auth_config, load_settings
from gcal_auth.audit import log_auth_event
from gcal_auth.calendar_client import build_calendar_service, verify_access
from gcal_auth.credentials import CredentialResolver
from gcal_auth.errors import AuthenticationError, AuthErrorKind, TokenFormatError
from gcal_auth.flow import OAuthFlowController
from gcal_auth.models import KNOWN_METHODS, SUPPORTED_METHODS, AuthConfig, ClientCredentials, TokenSet
from gcal_auth.token_store import TokenStore

logger = logging.getLogger(__name__)


class AuthState(str, Enum):
    """Lifecycle states of an AuthManager."""

    UNAUTHENTICATED = "unauthenticated"
    FLOW_IN_PROGRESS = "flow_in_progress"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    FAILED = "failed"


class AuthManager:
    """Single-user, single-provider credential broker."""

    def __init__(
        self,
        config: AuthConfig,
        tenant_id: str | None = None,
        resolver: CredentialResolver | None = None,
        token_store: TokenStore | None = None,
        flow_controller: OAuthFlowController | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Auth policy for this instance.
            tenant_id: Tenant used to namespace the token encryption key.
            resolver: Client identity source (built from config if omitted).
            token_store: Token persistence (built from config if omitted).
            flow_controller: Interactive flow driver (built from config if omitted).

        Raises:
            AuthenticationError: CONFIGURATION_ERROR for an unknown or
                unimplemented auth method.
        """
        _check_method(config.method)
        self.config = config
        self.tenant_id = tenant_id
        self.resolver = resolver or CredentialResolver(
            config.credentials_dir,
            client_id=config.client_id,
            client_secret=config.client_secret,
        )
        self.token_store = token_store or TokenStore(
            config.credentials_dir, tenant_id=tenant_id, encrypt=config.encrypt_tokens
        )
        self.flow_controller = flow_controller or OAuthFlowController(config)

        self.state = AuthState.UNAUTHENTICATED
        self._client: ClientCredentials | None = None
        self._tokens: TokenSet | None = None
        self._credentials: Credentials | None = None
        self._lock = threading.RLock()
        self._inflight: Future | None = None

    # -- public API ---------------------------------------------------------

    @property
    def current_tokens(self) -> TokenSet | None:
        return self._tokens

    @property
    def client_credentials(self) -> ClientCredentials:
        """The resolved OAuth client, resolved once and then fixed.

        Raises:
            AuthenticationError: CONFIGURATION_ERROR if no source has one.
        """
        with self._lock:
            if self._client is None:
                self._client = self.resolver.resolve()
                logger.info("Using OAuth client from %s", self._client.source)
            return self._client

    def authenticate(self, force: bool = False) -> Credentials:
        """Return a usable credential, running the interactive flow if needed.

        Args:
            force: Ignore stored tokens and always run the interactive flow.

        Returns:
            The live google-auth Credentials object.

        Raises:
            AuthenticationError: On configuration problems, listener failures,
                denial, timeout, or a failed code exchange.
        """
        client = self.client_credentials

        if not force:
            if self.is_authenticated():
                return self._credentials

            tokens = self.load_stored_tokens()
            if tokens is not None:
                if self.config.verify_stored_tokens:
                    self._verify_stored(tokens, client)
                creds = self._install(tokens, client)
                logger.info("Using stored Calendar API tokens")
                log_auth_event("tokens_loaded", self.tenant_id, expired=tokens.expired)
                return creds

        return self._run_flow_once(client, force=force)

    def refresh(self) -> None:
        """Exchange the refresh token for a new access token and persist it.

        Raises:
            AuthenticationError: REFRESH_FAILED if no refresh token is held or
                the provider rejects it; NETWORK_ERROR on transport failure.
        """
        with self._lock:
            current = self._tokens
            if current is None or not current.refresh_token:
                raise AuthenticationError("No refresh token available", AuthErrorKind.REFRESH_FAILED)
            client = self.client_credentials
            previous_state = self.state
            self.state = AuthState.REFRESHING

        creds = current.to_credentials(client)
        try:
            creds.refresh(Request())
        except RefreshError as e:
            self._fail("refresh_failed", AuthErrorKind.REFRESH_FAILED)
            raise AuthenticationError(f"Token refresh failed: {e}", AuthErrorKind.REFRESH_FAILED) from e
        except TransportError as e:
            with self._lock:
                self.state = previous_state
            log_auth_event("refresh_failed", self.tenant_id, kind=AuthErrorKind.NETWORK_ERROR.value)
            raise AuthenticationError(
                f"Token refresh failed: {e}", AuthErrorKind.NETWORK_ERROR, retryable=True
            ) from e

        refreshed = TokenSet.from_credentials(creds, fallback=current)
        try:
            self.token_store.save(refreshed)
        except OSError as e:
            with self._lock:
                self.state = previous_state
            log_auth_event("refresh_failed", self.tenant_id, kind=AuthErrorKind.REFRESH_FAILED.value)
            raise AuthenticationError(
                f"Could not save refreshed tokens: {e}", AuthErrorKind.REFRESH_FAILED, retryable=True
            ) from e
        self._install(refreshed, client)
        logger.info("Calendar API tokens refreshed")
        log_auth_event("tokens_refreshed", self.tenant_id)

    def clear(self) -> None:
        """Delete stored tokens and drop the in-memory credential."""
        with self._lock:
            self.token_store.clear()
            self._tokens = None
            if self._credentials is not None:
                _reset_credentials(self._credentials)
            self.state = AuthState.UNAUTHENTICATED
        logger.info("Calendar API tokens cleared")
        log_auth_event("tokens_cleared", self.tenant_id)

    def is_authenticated(self) -> bool:
        """True iff the live credential holds an access token. No network call."""
        return bool(self._credentials is not None and self._credentials.token)

    def get_auth_client(self) -> Credentials:
        """Return the live credential, authenticating first if necessary."""
        if self.is_authenticated():
            return self._credentials
        return self.authenticate()

    def get_api_client(self) -> Any:
        """Return a Calendar v3 service bound to the live credential."""
        return build_calendar_service(self.get_auth_client())

    # -- internals ----------------------------------------------------------

    def load_stored_tokens(self) -> TokenSet | None:
        """Read the token file without touching in-memory state.

        A malformed file is logged and treated as absent.
        """
        try:
            return self.token_store.load()
        except TokenFormatError as e:
            logger.warning("Ignoring malformed token file: %s", e)
            return None

    def _install(self, tokens: TokenSet, client: ClientCredentials) -> Credentials:
        """Load ``tokens`` into the live credential.

        The Credentials object is created once per manager and updated in
        place afterwards, so API clients built earlier see refreshes and
        clears.
        """
        with self._lock:
            fresh = tokens.to_credentials(client)
            if self._credentials is None:
                self._credentials = fresh
            else:
                _copy_token_state(fresh, self._credentials)
            self._tokens = tokens
            self.state = AuthState.AUTHENTICATED
            return self._credentials

    def _verify_stored(self, tokens: TokenSet, client: ClientCredentials) -> None:
        try:
            verify_access(tokens.to_credentials(client))
        except AuthenticationError as e:
            logger.warning("Stored Calendar API tokens failed verification: %s", e)
            self._fail("tokens_rejected", e.kind)
            raise

    def _fail(self, event: str, kind: AuthErrorKind) -> None:
        with self._lock:
            self.state = AuthState.FAILED
        log_auth_event(event, self.tenant_id, kind=kind.value)

    def _run_flow_once(self, client: ClientCredentials, force: bool = False) -> Credentials:
        """Run the interactive flow, sharing one in-flight flow between callers."""
        with self._lock:
            if not force and self.is_authenticated():
                return self._credentials
            future = self._inflight
            owner = future is None
            if owner:
                future = self._inflight = Future()
                self.state = AuthState.FLOW_IN_PROGRESS

        if not owner:
            logger.info("Authorization already in progress, waiting for it to finish")
            return future.result()

        log_auth_event("flow_started", self.tenant_id)
        try:
            tokens = self.flow_controller.run_interactive_flow(client, list(self.config.scopes))
            self.token_store.save(tokens)
            creds = self._install(tokens, client)
        except Exception as e:
            kind = e.kind if isinstance(e, AuthenticationError) else AuthErrorKind.UNAUTHENTICATED
            self._fail("flow_failed", kind)
            with self._lock:
                self._inflight = None
            future.set_exception(e)
            raise

        logger.info("Calendar API tokens saved")
        log_auth_event("flow_completed", self.tenant_id, scopes=list(tokens.scopes))
        with self._lock:
            self._inflight = None
        future.set_result(creds)
        return creds


def _copy_token_state(source: Credentials, target: Credentials) -> None:
    target.token = source.token
    target.expiry = source.expiry
    target._refresh_token = source.refresh_token
    target._scopes = source.scopes


def _reset_credentials(creds: Credentials) -> None:
    # a credential left with a refresh token would silently re-authorize
    # itself on the next API call
    creds.token = None
    creds.expiry = None
    creds._refresh_token = None


def _check_method(method: str) -> None:
    if method in SUPPORTED_METHODS:
        return
    if method in KNOWN_METHODS:
        raise AuthenticationError(
            f"Authentication method {method} not yet implemented",
            AuthErrorKind.CONFIGURATION_ERROR,
        )
    raise AuthenticationError(
        f"Unsupported authentication method: {method}",
        AuthErrorKind.CONFIGURATION_ERROR,
    )


def create_auth_manager(settings: Settings | None = None, tenant_id: str | None = None, **overrides: Any) -> AuthManager:
    """Build an AuthManager from environment settings.

    Args:
        settings: A Settings instance; loaded from the environment if omitted.
        tenant_id: Overrides the configured tenant.
        **overrides: AuthConfig fields to override (e.g. client_id).
    """
    settings = settings or load_settings()
    config = build_auth_config(settings, **overrides)
    return AuthManager(config, tenant_id=tenant_id or settings.tenant_id)
