"""Client identity resolution.

Works out which OAuth client (id + secret) to use, first match wins:

1. Explicitly supplied values (CLI flags or AuthConfig).
2. Environment variables: GCAL_MCP_CLIENT_ID/GCAL_MCP_CLIENT_SECRET, then
   GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET.
3. gcp-oauth.keys.json in the credentials directory, then in the current
   working directory. A file found only in the working directory is copied
   into the credentials directory for future runs.
"""

import json
import logging
import os
import shutil
from pathlib import Path

from gcal_auth.errors import AuthenticationError, AuthErrorKind
from gcal_auth.models import ClientCredentials
from gcal_auth.validator import client_secrets_section, validate_client_secrets

logger = logging.getLogger(__name__)

CLIENT_SECRETS_FILENAME = "gcp-oauth.keys.json"

ENV_PAIRS = (
    ("GCAL_MCP_CLIENT_ID", "GCAL_MCP_CLIENT_SECRET"),
    ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET"),
)


class CredentialResolver:
    """Resolves ClientCredentials from the configured sources."""

    def __init__(
        self,
        credentials_dir: str | Path,
        client_id: str | None = None,
        client_secret: str | None = None,
        cwd: str | Path | None = None,
    ) -> None:
        self.credentials_dir = Path(os.path.expanduser(str(credentials_dir)))
        self.client_id = client_id
        self.client_secret = client_secret
        self.cwd = Path(cwd) if cwd is not None else None

    @property
    def global_secrets_path(self) -> Path:
        return self.credentials_dir / CLIENT_SECRETS_FILENAME

    @property
    def local_secrets_path(self) -> Path:
        return (self.cwd or Path.cwd()) / CLIENT_SECRETS_FILENAME

    def resolve(self) -> ClientCredentials:
        """Return the first complete client identity.

        Raises:
            AuthenticationError: CONFIGURATION_ERROR when no source yields
                both an id and a secret, or a secrets file is malformed.
        """
        if self.client_id and self.client_secret:
            return ClientCredentials(self.client_id, self.client_secret, source="explicit")

        for id_var, secret_var in ENV_PAIRS:
            client_id = os.getenv(id_var, "").strip()
            client_secret = os.getenv(secret_var, "").strip()
            if client_id and client_secret:
                logger.debug("Using client credentials from $%s", id_var)
                return ClientCredentials(client_id, client_secret, source=f"env:{id_var}")

        if self.global_secrets_path.is_file():
            return self._read_secrets_file(self.global_secrets_path)

        if self.local_secrets_path.is_file():
            creds = self._read_secrets_file(self.local_secrets_path)
            self._copy_to_global()
            return creds

        raise AuthenticationError(
            "OAuth client credentials not found.\n\n"
            "Provide them in one of these ways:\n"
            "  - Pass --client-id and --client-secret\n"
            "  - Set GCAL_MCP_CLIENT_ID/GCAL_MCP_CLIENT_SECRET "
            "(or GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET)\n"
            f"  - Save the downloaded JSON as {self.global_secrets_path} (recommended)\n"
            f"  - Save it as {self.local_secrets_path} (current directory)\n\n"
            "Download OAuth2 credentials from Google Cloud Console:\n"
            "  https://console.cloud.google.com/apis/credentials",
            AuthErrorKind.CONFIGURATION_ERROR,
        )

    def _read_secrets_file(self, path: Path) -> ClientCredentials:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise AuthenticationError(
                f"Could not read OAuth client secrets from {path}: {e}",
                AuthErrorKind.CONFIGURATION_ERROR,
            ) from e

        is_valid, err = validate_client_secrets(data)
        if not is_valid:
            raise AuthenticationError(
                f"Invalid OAuth client secrets in {path}: {err}",
                AuthErrorKind.CONFIGURATION_ERROR,
            )

        section = client_secrets_section(data)
        logger.info("Using OAuth client secrets from %s", path)
        return ClientCredentials(section["client_id"], section["client_secret"], source=str(path))

    def _copy_to_global(self) -> None:
        try:
            self.credentials_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            shutil.copyfile(self.local_secrets_path, self.global_secrets_path)
            os.chmod(self.global_secrets_path, 0o600)
            logger.info("Copied OAuth client secrets to %s", self.global_secrets_path)
        except OSError as e:
            logger.warning("Could not copy OAuth client secrets to %s: %s", self.global_secrets_path, e)
