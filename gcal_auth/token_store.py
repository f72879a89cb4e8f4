"""Encrypted token persistence.

Tokens are stored as JSON, encrypted with AES-256-CBC under a key derived by
scrypt from the local user identity and an optional tenant id. The key is
recomputed on every TokenStore construction and never written anywhere, so a
token file is only readable by the same user (and tenant) that wrote it.

On-disk format of an encrypted file: ``<iv hex>:<ciphertext hex>``.

Filenames are tried in order on load so that stores written by older
releases (``tokens.json``) keep working after the rename to
``credentials.json``. Saves always use the current name.
"""

import json
import logging
import os
import secrets
import tempfile
from pathlib import Path

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from gcal_auth.errors import TokenFormatError
from gcal_auth.models import TokenSet

logger = logging.getLogger(__name__)

TOKEN_FILENAME = "credentials.json"
LEGACY_TOKEN_FILENAMES = ("tokens.json",)
TOKEN_FILENAMES = (TOKEN_FILENAME, *LEGACY_TOKEN_FILENAMES)

KEY_LENGTH = 32
IV_LENGTH = 16
SEPARATOR = ":"

# scrypt cost parameters (N=2^14, r=8, p=1)
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


# ---------------------------------------------------------------------------
# Key derivation and envelope encryption
# ---------------------------------------------------------------------------


def machine_identity() -> str:
    """Return the local user identity used as key material."""
    return os.environ.get("USER") or os.environ.get("USERNAME") or "default"


def derive_tenant_key(tenant_id: str | None = None, identity: str | None = None) -> bytes:
    """Derive the 32-byte token encryption key for a (user, tenant) pair.

    Deterministic: the same inputs always give the same key, and different
    tenants on one machine give unrelated keys.

    Args:
        tenant_id: Optional tenant namespace.
        identity: Local user identity; defaults to machine_identity().

    Returns:
        The derived key bytes.
    """
    identity = identity if identity is not None else machine_identity()
    salt = f"gcal-mcp-{tenant_id or 'single'}-salt".encode("utf-8")
    key_material = f"{identity}-{tenant_id or 'default'}".encode("utf-8")
    kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(key_material)


def encrypt(plaintext: str, key: bytes) -> str:
    """Encrypt text with a fresh random IV and return ``iv_hex:ciphertext_hex``."""
    iv = secrets.token_bytes(IV_LENGTH)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return iv.hex() + SEPARATOR + ciphertext.hex()


def decrypt(envelope: str, key: bytes) -> str:
    """Decrypt an ``iv_hex:ciphertext_hex`` envelope.

    Raises:
        TokenFormatError: If the envelope is structurally malformed (missing
            separator, empty or truncated parts, non-hex content).
        ValueError: If the envelope is well-formed but does not decrypt under
            this key (bad padding or non-UTF-8 plaintext).
    """
    iv_hex, sep, ct_hex = envelope.strip().partition(SEPARATOR)
    if not sep or not iv_hex or not ct_hex:
        raise TokenFormatError("Invalid encrypted data format: expected '<iv>:<ciphertext>'")

    try:
        iv = bytes.fromhex(iv_hex)
        ciphertext = bytes.fromhex(ct_hex)
    except ValueError as e:
        raise TokenFormatError(f"Invalid encrypted data format: {e}") from e

    if len(iv) != IV_LENGTH:
        raise TokenFormatError(f"Invalid IV length: {len(iv)} bytes")
    if len(ciphertext) % IV_LENGTH:
        raise TokenFormatError("Truncated ciphertext")

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    plaintext = unpadder.update(padded) + unpadder.finalize()
    return plaintext.decode("utf-8")


# ---------------------------------------------------------------------------
# TokenStore
# ---------------------------------------------------------------------------


class TokenStore:
    """Saves, loads and clears the token file for one tenant."""

    def __init__(self, storage_dir: str | Path, tenant_id: str | None = None, encrypt: bool = True) -> None:
        """Initialize the store.

        Args:
            storage_dir: Directory holding the token file; a leading ``~`` is
                expanded to the user's home directory.
            tenant_id: Optional tenant namespace for key derivation.
            encrypt: Whether token files are encrypted at rest.
        """
        self.storage_dir = Path(os.path.expanduser(str(storage_dir)))
        self.tenant_id = tenant_id
        self._key = derive_tenant_key(tenant_id) if encrypt else None

    @property
    def encrypted(self) -> bool:
        return self._key is not None

    @property
    def token_path(self) -> Path:
        return self.storage_dir / TOKEN_FILENAME

    def candidate_paths(self) -> list[Path]:
        return [self.storage_dir / name for name in TOKEN_FILENAMES]

    def save(self, tokens: TokenSet) -> Path:
        """Write the token set, replacing any previous file atomically.

        Returns:
            The path written.
        """
        self._ensure_directory()

        data = json.dumps(tokens.to_dict(), indent=2)
        if self._key is not None:
            data = encrypt(data, self._key)

        # mkstemp creates the file 0600 on the same filesystem as the target
        fd, tmp_name = tempfile.mkstemp(dir=self.storage_dir, prefix=".credentials.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.token_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug("Saved tokens to %s", self.token_path)
        return self.token_path

    def load(self) -> TokenSet | None:
        """Load the stored token set.

        Returns:
            The TokenSet, or None when no file exists, it cannot be read, it
            does not decrypt under this store's key, or it does not parse.

        Raises:
            TokenFormatError: If an encrypted file is structurally malformed.
        """
        path = next((p for p in self.candidate_paths() if p.is_file()), None)
        if path is None:
            return None
        if path.name != TOKEN_FILENAME:
            logger.info("Loading tokens from legacy file %s", path)

        try:
            data = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to read tokens from %s: %s", path, e)
            return None

        if self._key is not None:
            try:
                data = decrypt(data, self._key)
            except TokenFormatError:
                raise
            except ValueError as e:
                logger.warning("Could not decrypt tokens in %s: %s", path, e)
                return None

        try:
            return TokenSet.from_dict(json.loads(data))
        except ValueError as e:
            logger.warning("Stored tokens in %s are invalid: %s", path, e)
            return None

    def clear(self) -> None:
        """Remove every token file this store may have written. Idempotent."""
        for path in self.candidate_paths():
            try:
                path.unlink()
                logger.debug("Removed %s", path)
            except FileNotFoundError:
                continue

    def _ensure_directory(self) -> None:
        if self.storage_dir.is_dir():
            return
        self.storage_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        os.chmod(self.storage_dir, 0o700)
