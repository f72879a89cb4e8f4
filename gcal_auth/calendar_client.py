"""Google Calendar API binding for an authenticated credential.

Tool handlers only ever see the service object built here; everything about
how the credential was obtained stays inside the auth core.
"""

import logging
from typing import Any

from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from gcal_auth.errors import AuthenticationError, AuthErrorKind, error_from_http_status

logger = logging.getLogger(__name__)


def build_calendar_service(creds: Credentials) -> Any:
    """Build a Calendar v3 service bound to ``creds``."""
    return build("calendar", "v3", credentials=creds, cache_discovery=False)


def list_calendars(service: Any, max_results: int = 5) -> list[dict[str, Any]]:
    """List the user's calendars in a simplified format.

    Args:
        service: A Calendar v3 service.
        max_results: Upper bound on calendars returned.

    Returns:
        List of dicts with "id", "summary" and "primary".
    """
    result = service.calendarList().list(maxResults=max_results).execute()
    items = result.get("items", [])
    logger.info("Retrieved %d calendars", len(items))
    return [
        {
            "id": item.get("id", ""),
            "summary": item.get("summary", "(No title)"),
            "primary": bool(item.get("primary", False)),
        }
        for item in items
    ]


def verify_access(creds: Credentials) -> None:
    """Make one cheap API call to prove the credential works.

    Raises:
        AuthenticationError: TOKEN_EXPIRED on 401, otherwise NETWORK_ERROR
            (both retryable).
    """
    try:
        list_calendars(build_calendar_service(creds), max_results=1)
    except HttpError as e:
        status = e.resp.status if e.resp is not None else 0
        if status == 401:
            raise error_from_http_status(
                401, "Calendar API credentials are invalid or expired"
            ) from e
        raise AuthenticationError(
            f"Calendar API verification failed: {e}",
            AuthErrorKind.NETWORK_ERROR,
            retryable=True,
        ) from e
    except RefreshError as e:
        raise error_from_http_status(401, f"Calendar API credentials could not be refreshed: {e}") from e
    except Exception as e:
        raise AuthenticationError(
            f"Calendar API verification failed: {e}",
            AuthErrorKind.NETWORK_ERROR,
            retryable=True,
        ) from e
