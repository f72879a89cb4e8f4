"""Auth audit log.

Appends one JSON object per line (NDJSON) to a daily file for every token
lifecycle event: tokens loaded, flow started/completed/failed, refresh,
clear. Only non-secret details are recorded; tokens, codes and client
secrets never reach this file.

Filter with jq, e.g. ``jq 'select(.event == "flow_failed")' 2025-02-17.log``.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# Directory for auth audit logs
LOG_DIR = Path.home() / ".gcal-mcp" / "logs"

# Standard Python logger for failures writing the audit trail itself
_error_logger = logging.getLogger("gcal_auth.audit")


def _ensure_log_dir() -> None:
    """Create the log directory if it doesn't exist."""
    LOG_DIR.mkdir(mode=0o700, parents=True, exist_ok=True)


def log_auth_event(event: str, tenant_id: str | None = None, **details: Any) -> None:
    """Append an auth event to today's audit file.

    Args:
        event: Event name (e.g. "flow_started").
        tenant_id: Tenant the event belongs to.
        **details: Extra non-secret context (port, error kind, source...).
    """
    entry = {
        "logged_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "event": event,
        "tenant_id": tenant_id or "default",
    }
    entry.update(details)

    try:
        _ensure_log_dir()
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        with open(LOG_DIR / f"{today}.log", "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")
    except OSError as e:
        _error_logger.error("Failed to write auth audit log: %s", e)
