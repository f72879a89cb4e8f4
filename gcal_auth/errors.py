"""Authentication error taxonomy.

Every failure the auth core surfaces to callers is an AuthenticationError
carrying an AuthErrorKind and a retryable flag, so the CLI and tool handlers
can decide whether to tell the operator "try again" or "fix your setup".
"""

from enum import Enum


class AuthErrorKind(str, Enum):
    """What went wrong, independent of the message text."""

    CONFIGURATION_ERROR = "configuration_error"
    INVALID_CREDENTIALS = "invalid_credentials"
    TOKEN_EXPIRED = "token_expired"
    REFRESH_FAILED = "refresh_failed"
    NETWORK_ERROR = "network_error"
    INVALID_SCOPE = "invalid_scope"
    RATE_LIMITED = "rate_limited"
    UNAUTHENTICATED = "unauthenticated"
    CALLBACK_BIND_FAILED = "callback_bind_failed"
    AUTHORIZATION_DENIED = "authorization_denied"
    AUTHORIZATION_TIMEOUT = "authorization_timeout"


DESCRIPTIONS: dict[AuthErrorKind, str] = {
    AuthErrorKind.CONFIGURATION_ERROR: "Authentication configuration error",
    AuthErrorKind.INVALID_CREDENTIALS: "Invalid credentials provided",
    AuthErrorKind.TOKEN_EXPIRED: "Authentication token has expired",
    AuthErrorKind.REFRESH_FAILED: "Failed to refresh authentication token",
    AuthErrorKind.NETWORK_ERROR: "Network error during authentication",
    AuthErrorKind.INVALID_SCOPE: "Requested scope not authorized",
    AuthErrorKind.RATE_LIMITED: "Too many authentication attempts",
    AuthErrorKind.UNAUTHENTICATED: "No valid authentication found",
    AuthErrorKind.CALLBACK_BIND_FAILED: "Could not start the local callback listener",
    AuthErrorKind.AUTHORIZATION_DENIED: "Authorization was not granted",
    AuthErrorKind.AUTHORIZATION_TIMEOUT: "Timed out waiting for authorization",
}


class AuthenticationError(Exception):
    """Base error for the auth core."""

    def __init__(
        self,
        message: str,
        kind: AuthErrorKind = AuthErrorKind.UNAUTHENTICATED,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retryable = retryable

    @property
    def description(self) -> str:
        return DESCRIPTIONS[self.kind]


class CallbackBindError(AuthenticationError):
    """The callback port could not be bound (usually: already in use)."""

    def __init__(self, port: int, reason: str = "") -> None:
        message = (
            f"Port {port} is already in use by another process.\n\n"
            "To fix this:\n"
            f"  1. Find the process: lsof -i :{port}\n"
            "  2. Stop it: kill <PID>\n"
            "  3. Try authenticating again (a new random port is chosen on every attempt)"
        )
        if reason:
            message += f"\n\nDetails: {reason}"
        super().__init__(message, AuthErrorKind.CALLBACK_BIND_FAILED, retryable=True)
        self.port = port


class AuthorizationDeniedError(AuthenticationError):
    """The provider redirected back with an error instead of a code."""

    def __init__(self, error: str, description: str = "") -> None:
        message = f"Authorization failed: {error}"
        if description:
            message += f" - {description}"
        super().__init__(message, AuthErrorKind.AUTHORIZATION_DENIED)
        self.error = error


class AuthorizationTimeoutError(AuthenticationError):
    """No callback arrived before the deadline."""

    def __init__(self, timeout: float) -> None:
        super().__init__(
            f"Authentication timed out after {_format_seconds(timeout)}. Please try again.",
            AuthErrorKind.AUTHORIZATION_TIMEOUT,
            retryable=True,
        )
        self.timeout = timeout


class TokenFormatError(ValueError):
    """An encrypted token envelope is structurally malformed."""


def error_from_http_status(status: int, message: str) -> AuthenticationError:
    """Map a provider HTTP status to an AuthenticationError.

    Args:
        status: HTTP status code returned by the provider.
        message: Text to carry on the error.

    Returns:
        An AuthenticationError with the matching kind and retryable flag.
    """
    if status == 401:
        return AuthenticationError(message, AuthErrorKind.TOKEN_EXPIRED, retryable=True)
    if status == 403:
        return AuthenticationError(message, AuthErrorKind.INVALID_SCOPE)
    if status == 429:
        return AuthenticationError(message, AuthErrorKind.RATE_LIMITED, retryable=True)
    return AuthenticationError(message, AuthErrorKind.NETWORK_ERROR, retryable=status >= 500)


def _format_seconds(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g} seconds"
