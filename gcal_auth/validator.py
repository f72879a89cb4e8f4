"""Shape validation for the JSON documents the auth core reads.

Two documents come from disk: the OAuth client secrets file downloaded from
the Google Cloud console, and the token file written by TokenStore. Both are
checked here so a malformed file is caught early rather than causing a
confusing failure halfway through a flow.
"""

CLIENT_SECRET_KEYS = ("installed", "web")


# ---------------------------------------------------------------------------
# Client secrets file
# ---------------------------------------------------------------------------


def validate_client_secrets(data: dict) -> tuple[bool, str]:
    """Validate a Google OAuth client secrets document.

    The document must contain an "installed" or "web" object, each holding a
    non-empty client_id and client_secret.

    Args:
        data: The parsed JSON document.

    Returns:
        (is_valid, error_description).
    """
    if not isinstance(data, dict):
        return False, "Client secrets must be a JSON object."

    for key in CLIENT_SECRET_KEYS:
        section = data.get(key)
        if section is None:
            continue
        if not isinstance(section, dict):
            return False, f"'{key}' must be an object."
        for field in ("client_id", "client_secret"):
            value = section.get(field)
            if not isinstance(value, str) or not value:
                return False, f"'{key}' must include a non-empty '{field}'."
        return True, ""

    return False, 'Expected "installed" or "web" application credentials.'


def client_secrets_section(data: dict) -> dict:
    """Return whichever of "installed"/"web" is present (installed wins)."""
    for key in CLIENT_SECRET_KEYS:
        if isinstance(data.get(key), dict):
            return data[key]
    return {}


# ---------------------------------------------------------------------------
# Token file payload
# ---------------------------------------------------------------------------


def validate_token_payload(data: dict) -> tuple[bool, str]:
    """Validate a decrypted token file payload.

    Required: a non-empty access_token string. Optional fields are
    type-checked when present.

    Args:
        data: The parsed JSON payload.

    Returns:
        (is_valid, error_description).
    """
    if not isinstance(data, dict):
        return False, "Token payload must be a JSON object."

    token = data.get("access_token")
    if not isinstance(token, str) or not token:
        return False, "Token payload must include a non-empty 'access_token'."

    refresh = data.get("refresh_token")
    if refresh is not None and not isinstance(refresh, str):
        return False, "'refresh_token' must be a string."

    expiry = data.get("expiry")
    if expiry is not None and not isinstance(expiry, str):
        return False, "'expiry' must be an ISO-8601 string."

    expiry_date = data.get("expiry_date")
    if expiry_date is not None and not isinstance(expiry_date, (int, float)):
        return False, "'expiry_date' must be epoch milliseconds."

    scope = data.get("scope")
    if scope is not None and not isinstance(scope, (str, list)):
        return False, "'scope' must be a string or a list."

    return True, ""
