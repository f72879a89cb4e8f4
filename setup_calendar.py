"""Google Calendar OAuth Setup.

Run this once to authenticate with Google Calendar. Opens your browser for
the OAuth consent flow (unless valid tokens are already stored), saves the
encrypted tokens under ~/.gcal-mcp, then lists a few calendars to prove
the API is reachable.

Usage:
    python setup_calendar.py
"""

import sys

from googleapiclient.errors import HttpError

from gcal_auth.calendar_client import list_calendars
from gcal_auth.errors import AuthenticationError
from gcal_auth.manager import create_auth_manager


def main() -> int:
    """Run the OAuth flow if needed and verify Calendar API access."""
    print("Starting Google Calendar authentication...")
    print("Please sign in and grant the requested permissions.")
    print()

    try:
        manager = create_auth_manager()
        service = manager.get_api_client()
        print("Testing Calendar API access...")
        calendars = list_calendars(service, max_results=5)
    except AuthenticationError as e:
        print(f"Authentication failed: {e}", file=sys.stderr)
        return 1
    except HttpError as e:
        print(f"Calendar API access failed: {e}", file=sys.stderr)
        return 1

    print()
    print(f"Found {len(calendars)} calendar(s):")
    for cal in calendars:
        primary = " (Primary)" if cal["primary"] else ""
        print(f"   {cal['summary']}{primary}")
        print(f"      ID: {cal['id']}")

    print()
    print(f"Tokens saved to: {manager.token_store.token_path}")
    print("You can now run: python main.py status")
    return 0


if __name__ == "__main__":
    sys.exit(main())
