"""
KeyVault Configuration — environment driven settings.

Reads the following environment variables:
    KEYVAULT_DATA_DIR = directory holding the state file, master key and
                        password verifier (default: ~/.config/navigator-keyvault)
    KEYVAULT_SESSION_TTL = seconds a verified password stays valid (default 600)
    KEYVAULT_CIPHER_BACKEND = aesgcm | chacha20
    KEYVAULT_HTTP_RETRIES = attempts per outgoing request (default 3)

Security Note:
    Never log key material. Only log key ids and operation names.
"""
import os
import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("navigator.keyvault")


def _default_data_dir() -> Path:
    return Path.home() / ".config" / "navigator-keyvault"


KEYVAULT_DATA_DIR = Path(
    os.environ.get("KEYVAULT_DATA_DIR", str(_default_data_dir()))
).expanduser()

# 10 minutes
SESSION_TTL = int(os.environ.get("KEYVAULT_SESSION_TTL", 600))

CIPHER_BACKEND = os.environ.get("KEYVAULT_CIPHER_BACKEND", "aesgcm").lower()

STATE_FILE = "keyvault-storage.json"
EXPORT_DIR = "exports"
MASTER_KEY_FILE = "master_key.bin"
PASSWORD_FILE = "password_hash.bin"

# persisted state schema
SCHEMA_VERSION = 2
# import/export document format
EXPORT_VERSION = "2.0.0"

EXPIRING_SOON_DAYS = 7
MIN_PASSWORD_LENGTH = 6

# network probes (seconds)
LIST_TIMEOUT = 10.0
REACHABILITY_TIMEOUT = 10.0
PROBE_TIMEOUT = 15.0
MODEL_TIMEOUT = 30.0
HTTP_RETRIES = int(os.environ.get("KEYVAULT_HTTP_RETRIES", 3))
HTTP_RETRY_DELAY = 0.5

ANTHROPIC_VERSION = "2023-06-01"
CLAUDE_PROBE_MODEL = "claude-3-haiku-20240307"
MODEL_TEST_MAX_TOKENS = 500
MODEL_TEST_TEMPERATURE = 0.7
DEFAULT_TEST_MESSAGE = "Which model are you?"


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    data_dir: Path = Field(default_factory=lambda: KEYVAULT_DATA_DIR)
    session_ttl: int = Field(default=SESSION_TTL, ge=1)
    cipher_backend: str = Field(default="aesgcm")
    http_retries: int = Field(default=HTTP_RETRIES, ge=1, le=10)

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in ("aesgcm", "chacha20"):
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @property
    def state_path(self) -> Path:
        return self.data_dir / STATE_FILE

    @property
    def export_dir(self) -> Path:
        return self.data_dir / EXPORT_DIR

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        config = cls(
            data_dir=Path(
                os.environ.get("KEYVAULT_DATA_DIR", str(KEYVAULT_DATA_DIR))
            ).expanduser(),
            session_ttl=int(os.environ.get("KEYVAULT_SESSION_TTL", SESSION_TTL)),
            cipher_backend=os.environ.get("KEYVAULT_CIPHER_BACKEND", CIPHER_BACKEND),
            http_retries=int(os.environ.get("KEYVAULT_HTTP_RETRIES", HTTP_RETRIES)),
        )
        logger.debug(
            "Vault config: data_dir=%s ttl=%ss cipher=%s",
            config.data_dir, config.session_ttl, config.cipher_backend,
        )
        return config
