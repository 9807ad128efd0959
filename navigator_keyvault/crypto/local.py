"""
LocalCryptoGateway — file-backed implementation of the CryptoGateway contract.

Keeps two files in the vault data directory:
    master_key.bin     32 random bytes, created on first use (mode 0600)
    password_hash.bin  ``salt:hash`` scrypt verifier of the vault password

Security Note:
    The master key protects keys at rest; the password only gates disclosure.
    Never log key material.
"""
import os
import logging
import secrets
from pathlib import Path
from typing import Optional, Union

from ..conf import MASTER_KEY_FILE, PASSWORD_FILE
from ..exceptions import AuthFailure, CryptoFailure, PasswordNotConfigured
from .aead import KEY_LENGTH, check_password, hash_password, seal, unseal
from .secret import Envelope, parse_secret

logger = logging.getLogger("navigator.keyvault")


def _write_private(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as fp:
        fp.write(data)


class LocalCryptoGateway:
    """Encrypts keys with a local master key and verifies the vault password."""

    def __init__(
        self,
        data_dir: Union[str, Path],
        cipher_backend: str = "aesgcm",
    ):
        self._data_dir = Path(data_dir)
        self._backend = cipher_backend
        self._master_key: Optional[bytes] = None

    @property
    def key_path(self) -> Path:
        return self._data_dir / MASTER_KEY_FILE

    @property
    def password_path(self) -> Path:
        return self._data_dir / PASSWORD_FILE

    def _load_master_key(self) -> bytes:
        """Read the master key, creating it on first use."""
        if self._master_key is not None:
            return self._master_key
        path = self.key_path
        if path.exists():
            key = path.read_bytes()
            if len(key) != KEY_LENGTH:
                raise CryptoFailure(
                    f"{path.name} must hold exactly {KEY_LENGTH} bytes, "
                    f"got {len(key)}"
                )
        else:
            key = secrets.token_bytes(KEY_LENGTH)
            _write_private(path, key)
            logger.info("Created new vault master key in %s", self._data_dir)
        self._master_key = key
        return key

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    async def encrypt(self, plaintext: str) -> str:
        envelope = seal(plaintext, self._load_master_key(), self._backend)
        return envelope.dumps()

    async def decrypt(self, value: str) -> str:
        """Decrypt an envelope; anything not envelope-shaped passes through."""
        secret = parse_secret(value)
        if not isinstance(secret, Envelope):
            return value
        return unseal(secret, self._load_master_key(), self._backend)

    # ------------------------------------------------------------------
    # Password lifecycle
    # ------------------------------------------------------------------

    async def has_password(self) -> bool:
        return self.password_path.exists()

    async def setup_password(self, password: str) -> None:
        if not password:
            raise AuthFailure("Password cannot be empty")
        _write_private(self.password_path, hash_password(password).encode("ascii"))
        logger.info("Vault password configured")

    async def verify_password(self, password: str) -> bool:
        if not await self.has_password():
            raise PasswordNotConfigured("Password not set up")
        verifier = self.password_path.read_text(encoding="ascii")
        return check_password(password, verifier)

    async def change_password(self, old_password: str, new_password: str) -> None:
        if not await self.verify_password(old_password):
            raise AuthFailure("Current password is incorrect")
        await self.setup_password(new_password)

    async def authenticate_biometric(self, reason: Optional[str] = None) -> bool:
        """No platform authenticator is available to a local process."""
        logger.debug("Biometric authentication requested (%s): unavailable", reason)
        return False
