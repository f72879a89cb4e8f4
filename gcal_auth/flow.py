"""Interactive OAuth2 authorization-code flow.

Binds a CallbackListener on a random high port, sends the operator to
Google's consent screen (offline access, forced consent so a refresh token is
always issued), waits for the redirect, and exchanges the code for tokens.
Persisting the result is the caller's job.
"""

import logging
import os
import random
import sys
import webbrowser
from typing import Callable, TextIO

import requests
from google_auth_oauthlib.flow import Flow
from oauthlib.oauth2.rfc6749.errors import OAuth2Error

from gcal_auth.callback_server import CallbackListener
from gcal_auth.errors import AuthenticationError, AuthErrorKind
from gcal_auth.models import AuthConfig, ClientCredentials, TokenSet

logger = logging.getLogger(__name__)

RELAX_SCOPE_ENV = "OAUTHLIB_RELAX_TOKEN_SCOPE"


class OAuthFlowController:
    """Runs one interactive consent flow per call to run_interactive_flow()."""

    def __init__(
        self,
        config: AuthConfig,
        listener_factory: Callable[..., CallbackListener] = CallbackListener,
        flow_factory: Callable[..., Flow] = Flow.from_client_config,
        browser_opener: Callable[[str], bool] = webbrowser.open,
        rng: random.Random | None = None,
        output: TextIO | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            config: Auth policy (redirect template, port range, timeout, browser).
            listener_factory: Builds the per-flow CallbackListener.
            flow_factory: Builds the google-auth-oauthlib Flow from a client config.
            browser_opener: Opens a URL in the local browser.
            rng: Random source for port selection.
            output: Stream for operator-facing messages (default: stderr).
        """
        self.config = config
        self.listener_factory = listener_factory
        self.flow_factory = flow_factory
        self.browser_opener = browser_opener
        self.rng = rng or random.Random()
        self.output = output

    def choose_port(self) -> int:
        low, high = self.config.port_range
        return self.rng.randrange(low, high)

    def build_flow(self, credentials: ClientCredentials, scopes: list[str], redirect_uri: str) -> Flow:
        # oauthlib reads this at exchange time; Google may grant a different
        # scope set than requested, which is not an exchange failure
        os.environ.setdefault(RELAX_SCOPE_ENV, "1")
        return self.flow_factory(
            credentials.to_client_config(redirect_uri),
            scopes=scopes,
            redirect_uri=redirect_uri,
        )

    def run_interactive_flow(self, credentials: ClientCredentials, scopes: list[str] | None = None) -> TokenSet:
        """Drive the browser consent step and return the issued tokens.

        Args:
            credentials: The resolved OAuth client.
            scopes: Scopes to request; defaults to the configured scopes.

        Returns:
            The TokenSet from the code exchange.

        Raises:
            AuthenticationError: CONFIGURATION_ERROR for an incomplete client,
                CallbackBindError / AuthorizationDeniedError /
                AuthorizationTimeoutError from the listener, and
                INVALID_CREDENTIALS when the code exchange fails.
        """
        if not credentials.client_id or not credentials.client_secret:
            raise AuthenticationError(
                "OAuth2 requires a client id and client secret",
                AuthErrorKind.CONFIGURATION_ERROR,
            )

        scopes = list(scopes or self.config.scopes)
        port = self.choose_port()
        redirect_uri = self.config.redirect_uri_for(port)
        flow = self.build_flow(credentials, scopes, redirect_uri)

        listener = self.listener_factory(
            port,
            timeout=self.config.callback_timeout,
            callback_path=self.config.callback_path,
        )
        with listener:
            auth_url, state = flow.authorization_url(access_type="offline", prompt="consent")
            listener.expected_state = state
            self.present(auth_url)
            self._say("Waiting for authorization callback...\n")
            code = listener.wait()

        self._say("Authorization received, exchanging code for tokens...")
        tokens = self.exchange_code(flow, code)
        self._say("Authentication successful.")
        return tokens

    def present(self, auth_url: str) -> None:
        """Show the authorization URL and try to open it in a browser."""
        self._say("\nGOOGLE CALENDAR AUTHENTICATION\n")
        self._say("If the browser does not open automatically, please visit this URL:\n")
        self._say(auth_url)
        self._say("")

        if not self.config.open_browser:
            return
        try:
            opened = self.browser_opener(auth_url)
        except webbrowser.Error as e:
            logger.debug("Browser launch failed: %s", e)
            opened = False
        if not opened:
            self._say("Could not open a browser automatically. Please open the URL above manually.\n")

    def exchange_code(self, flow: Flow, code: str) -> TokenSet:
        """Exchange an authorization code at the token endpoint."""
        try:
            flow.fetch_token(code=code)
        except (OAuth2Error, requests.RequestException, ValueError) as e:
            logger.error("Authorization code exchange failed: %s", e)
            raise AuthenticationError(
                f"Failed to exchange authorization code: {e}",
                AuthErrorKind.INVALID_CREDENTIALS,
            ) from e
        return TokenSet.from_credentials(flow.credentials)

    def _say(self, text: str) -> None:
        print(text, file=self.output or sys.stderr)
