"""Navigator KeyVault — local store for API provider credentials.

Security Note (Threat Model):
    Keys are sealed with a master key that lives next to the state file.
    The vault password only gates disclosure (view, copy, edit, delete)
    inside the application; a reader of the data directory can recover
    every key. Full-disk or OS keychain protection is out of scope.
"""

from .version import __version__
from .conf import VaultConfig
from .exceptions import (
    AuthFailure,
    CryptoFailure,
    InvalidFileFormat,
    NetworkFailure,
    NotFound,
    PasswordNotConfigured,
    ValidationError,
    VaultError,
)
from .models import (
    ApiKey,
    ApiKeyWithStatus,
    ApiModel,
    ApiType,
    KeyStatus,
    Provider,
    ProviderWithKeys,
)
from .session import AuthOutcome, AuthSessionGuard, GuardState, SensitiveAction
from .storage import JsonFileStorage, MemoryStorage
from .store import VaultStore
from .transfer import ImportExportMerger, ImportSummary
from .vault import KeyVault

__all__ = [
    "__version__",
    "ApiKey",
    "ApiKeyWithStatus",
    "ApiModel",
    "ApiType",
    "AuthFailure",
    "AuthOutcome",
    "AuthSessionGuard",
    "CryptoFailure",
    "GuardState",
    "ImportExportMerger",
    "ImportSummary",
    "InvalidFileFormat",
    "JsonFileStorage",
    "KeyStatus",
    "KeyVault",
    "MemoryStorage",
    "NetworkFailure",
    "NotFound",
    "PasswordNotConfigured",
    "Provider",
    "ProviderWithKeys",
    "SensitiveAction",
    "ValidationError",
    "VaultConfig",
    "VaultError",
    "VaultStore",
]
