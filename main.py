"""Google Calendar Auth - Entry Point.

Manages the locally stored, encrypted Google Calendar credentials used by the
calendar tools.

Usage:
    python main.py auth            # Reuse stored tokens or sign in
    python main.py auth --force    # Always run the browser sign-in
    python main.py status          # Show whether tokens are stored
    python main.py refresh         # Exchange the refresh token for a new access token
    python main.py clear           # Delete stored tokens
"""

import argparse
import logging
import sys

from config.settings import build_auth_config, load_settings
from gcal_auth.errors import AuthenticationError, AuthErrorKind
from gcal_auth.manager import AuthManager

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("main")

SETUP_HELP = """
Setup required:
   1. Create a Google Cloud project
   2. Enable the Google Calendar API
   3. Create OAuth 2.0 credentials (Desktop app)
   4. Either:
      - Save the downloaded JSON as ~/.gcal-mcp/gcp-oauth.keys.json, OR
      - Save it as gcp-oauth.keys.json in the current directory, OR
      - Set GCAL_MCP_CLIENT_ID and GCAL_MCP_CLIENT_SECRET
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage Google Calendar OAuth credentials.")
    parser.add_argument("--client-id", help="OAuth client id (overrides env and files).")
    parser.add_argument("--client-secret", help="OAuth client secret (overrides env and files).")
    parser.add_argument("--tenant", help="Tenant id used to namespace the token encryption key.")
    parser.add_argument("--no-browser", action="store_true", help="Only print the sign-in URL.")

    sub = parser.add_subparsers(dest="command", required=True)
    auth = sub.add_parser("auth", help="Authenticate (reuses stored tokens unless --force).")
    auth.add_argument("--force", action="store_true", help="Ignore stored tokens and sign in again.")
    sub.add_parser("status", help="Show whether usable tokens are stored.")
    sub.add_parser("refresh", help="Refresh the access token using the stored refresh token.")
    sub.add_parser("clear", help="Delete stored tokens.")
    return parser


def create_manager(args: argparse.Namespace) -> AuthManager:
    """Build the AuthManager for the parsed CLI arguments."""
    settings = load_settings()
    config = build_auth_config(
        settings,
        client_id=args.client_id,
        client_secret=args.client_secret,
        open_browser=False if args.no_browser else None,
    )
    return AuthManager(config, tenant_id=args.tenant or settings.tenant_id)


def run_command(manager: AuthManager, args: argparse.Namespace) -> int:
    """Execute one subcommand. Returns the process exit code."""
    if args.command == "auth":
        manager.authenticate(force=args.force)
        print("Authentication complete.")
        return 0

    if args.command == "status":
        tokens = manager.load_stored_tokens()
        if tokens is None:
            print("Not authenticated. Run: python main.py auth")
            return 1
        expiry = tokens.expiry.isoformat() if tokens.expiry else "unknown"
        print(f"Tokens stored in: {manager.token_store.storage_dir}")
        print(f"  Access token expires: {expiry}{' (expired)' if tokens.expired else ''}")
        print(f"  Refresh token: {'yes' if tokens.refresh_token else 'no'}")
        print(f"  Scopes: {', '.join(tokens.scopes) or 'unknown'}")
        return 0

    if args.command == "refresh":
        if manager.current_tokens is None:
            if manager.load_stored_tokens() is None:
                raise AuthenticationError(
                    "No stored tokens to refresh. Run: python main.py auth",
                    AuthErrorKind.UNAUTHENTICATED,
                )
            manager.authenticate()
        manager.refresh()
        print("Access token refreshed.")
        return 0

    if args.command == "clear":
        manager.clear()
        print("Stored tokens cleared.")
        return 0

    return 2


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and run the requested command."""
    args = build_parser().parse_args(argv)

    # Suppress werkzeug request logs from the callback listener
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    try:
        manager = create_manager(args)
        return run_command(manager, args)
    except AuthenticationError as e:
        print(f"\nAuthentication failed: {e}", file=sys.stderr)
        if e.kind == AuthErrorKind.CONFIGURATION_ERROR:
            print(SETUP_HELP, file=sys.stderr)
        elif e.retryable:
            print("This error may be temporary; please try again.", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
