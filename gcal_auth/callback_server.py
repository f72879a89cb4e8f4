"""Ephemeral OAuth callback listener.

A small Flask app, served by werkzeug in a daemon thread, that waits for the
provider to redirect the browser back with ``?code=...`` or ``?error=...``.
One listener exists per authorization attempt:

    Listening -> {CodeReceived, ErrorReceived, TimedOut, BindFailed} -> Closed

The first outcome wins. Later requests to the callback path get an
informational page and cannot change the result, and the server is shut down
(port released) before wait() returns or raises.
"""

import html
import logging
import socket
import threading
from enum import Enum

from flask import Flask, Response, request
from werkzeug.serving import BaseWSGIServer, make_server

from gcal_auth.errors import (
    AuthenticationError,
    AuthorizationDeniedError,
    AuthorizationTimeoutError,
    CallbackBindError,
)
from gcal_auth.models import DEFAULT_CALLBACK_TIMEOUT

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/oauth2callback"


class ListenerState(str, Enum):
    """Lifecycle of a CallbackListener."""

    IDLE = "idle"
    LISTENING = "listening"
    CODE_RECEIVED = "code_received"
    ERROR_RECEIVED = "error_received"
    TIMED_OUT = "timed_out"
    BIND_FAILED = "bind_failed"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Browser pages
# ---------------------------------------------------------------------------


_PAGE = """<!DOCTYPE html>
<html>
<head>
  <title>{title}</title>
  <style>
    body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; padding: 40px; text-align: center; }}
    h1 {{ color: {color}; }}
    p {{ color: #666; }}
  </style>
  {script}
</head>
<body>
  <h1>{title}</h1>
  {body}
</body>
</html>
"""


def success_page() -> str:
    return _PAGE.format(
        title="Authentication Successful",
        color="#28a745",
        script="<script>setTimeout(() => window.close(), 3000);</script>",
        body="<p>Google Calendar access has been authorized.</p>"
        "<p>You can close this window and return to the terminal. "
        "It will close automatically in 3 seconds.</p>",
    )


def failure_page(error: str, description: str = "") -> str:
    detail = html.escape(error)
    if description:
        detail += f": {html.escape(description)}"
    return _PAGE.format(
        title="Authentication Failed",
        color="#dc3545",
        script="",
        body=f"<p>{detail}</p><p>You can close this window and return to the terminal.</p>",
    )


def already_completed_page() -> str:
    return _PAGE.format(
        title="Authentication Already Completed",
        color="#666",
        script="",
        body="<p>This sign-in attempt has already finished. "
        "Return to the terminal for the result.</p>",
    )


# ---------------------------------------------------------------------------
# Listener
# ---------------------------------------------------------------------------


class CallbackListener:
    """Single-use HTTP listener that yields one authorization code.

    Usage:
        with CallbackListener(port, timeout=300) as listener:
            ...  # send the operator to the authorization URL
            code = listener.wait()
    """

    def __init__(
        self,
        port: int,
        timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        callback_path: str = CALLBACK_PATH,
        host: str = "localhost",
        expected_state: str | None = None,
    ) -> None:
        self.port = port
        self.timeout = timeout
        self.callback_path = callback_path
        self.host = host
        self.expected_state = expected_state
        self.state = ListenerState.IDLE
        self.outcome: ListenerState | None = None

        self._lock = threading.Lock()
        self._resolved = threading.Event()
        self._code: str | None = None
        self._error: AuthenticationError | None = None
        self._server: BaseWSGIServer | None = None
        self._thread: threading.Thread | None = None

        self.app = self._build_app()

    # -- lifecycle ----------------------------------------------------------

    def __enter__(self) -> "CallbackListener":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def start(self) -> None:
        """Bind the port and start serving in a background thread.

        Raises:
            CallbackBindError: If the port cannot be bound.
        """
        try:
            # make_server alone would print to stderr and sys.exit() on a busy port
            sock = socket.create_server((self.host, self.port))
        except OSError as e:
            error = CallbackBindError(self.port, e.strerror or str(e))
            self._resolve(ListenerState.BIND_FAILED, error=error)
            self.close()
            logger.error("Could not bind callback listener on port %d: %s", self.port, e)
            raise error from e

        try:
            self._server = make_server(self.host, self.port, self.app, fd=sock.fileno())
        finally:
            # the server works on its own duplicate of the descriptor
            sock.close()

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name=f"oauth-callback-{self.port}",
            daemon=True,
        )
        self._thread.start()
        self.state = ListenerState.LISTENING
        logger.info("Callback listener waiting on http://%s:%d%s", self.host, self.port, self.callback_path)

    def wait(self) -> str:
        """Block until the first outcome, close the listener, and return the code.

        Raises:
            AuthorizationDeniedError: If the callback carried an error.
            AuthorizationTimeoutError: If no callback arrived in time.
        """
        if not self._resolved.wait(self.timeout):
            self._resolve(ListenerState.TIMED_OUT, error=AuthorizationTimeoutError(self.timeout))
        self.close()

        if self._error is not None:
            raise self._error
        return self._code

    def close(self) -> None:
        """Shut the server down and release the port. Safe to call repeatedly."""
        with self._lock:
            server, self._server = self._server, None
            thread, self._thread = self._thread, None
            self.state = ListenerState.CLOSED

        if server is not None:
            server.shutdown()
            server.server_close()
            logger.debug("Callback listener on port %d closed", self.port)
        if thread is not None:
            thread.join(timeout=5)

    @property
    def closed(self) -> bool:
        return self._server is None

    # -- outcome ------------------------------------------------------------

    def _resolve(
        self,
        state: ListenerState,
        code: str | None = None,
        error: AuthenticationError | None = None,
    ) -> bool:
        """Record an outcome if none has been recorded yet. Returns True if it won."""
        with self._lock:
            if self._resolved.is_set():
                return False
            self.state = state
            self.outcome = state
            self._code = code
            self._error = error
            self._resolved.set()
        return True

    # -- HTTP ---------------------------------------------------------------

    def _build_app(self) -> Flask:
        app = Flask(__name__)

        def callback() -> tuple[Response, int]:
            if self._resolved.is_set():
                return _html(already_completed_page()), 409

            error = request.args.get("error")
            code = request.args.get("code")
            state = request.args.get("state")

            if error:
                description = request.args.get("error_description", "")
                self._resolve(
                    ListenerState.ERROR_RECEIVED,
                    error=AuthorizationDeniedError(error, description),
                )
                logger.warning("Authorization callback returned error: %s", error)
                return _html(failure_page(error, description)), 400

            if not code:
                self._resolve(
                    ListenerState.ERROR_RECEIVED,
                    error=AuthorizationDeniedError("missing_code", "No authorization code provided"),
                )
                return _html(failure_page("missing_code", "No authorization code provided")), 400

            if self.expected_state is not None and state != self.expected_state:
                self._resolve(
                    ListenerState.ERROR_RECEIVED,
                    error=AuthorizationDeniedError("state_mismatch", "The callback did not match this sign-in attempt"),
                )
                logger.warning("Authorization callback state did not match")
                return _html(failure_page("state_mismatch", "The callback did not match this sign-in attempt")), 400

            if not self._resolve(ListenerState.CODE_RECEIVED, code=code):
                return _html(already_completed_page()), 409
            logger.info("Authorization code received")
            return _html(success_page()), 200

        app.add_url_rule(self.callback_path, "callback", callback, methods=["GET"])
        return app


def await_authorization_code(
    port: int,
    timeout: float = DEFAULT_CALLBACK_TIMEOUT,
    callback_path: str = CALLBACK_PATH,
) -> str:
    """Listen on ``port`` until a code, an error, or the timeout arrives.

    Convenience wrapper for callers that do not need to act between binding
    and waiting.
    """
    with CallbackListener(port, timeout=timeout, callback_path=callback_path) as listener:
        return listener.wait()


def _html(body: str) -> Response:
    return Response(body, mimetype="text/html")
