"""KeyVault exceptions."""


class VaultError(Exception):
    """Base class for every error raised by the key vault."""


class ValidationError(VaultError):
    """Missing or malformed input; no state was changed."""


class NotFound(VaultError):
    """A provider or key id does not exist in the vault."""


class CryptoFailure(VaultError):
    """A secret could not be encrypted or disclosed."""


class AuthFailure(VaultError):
    """Wrong password. Retryable, attempts are not counted."""


class PasswordNotConfigured(AuthFailure):
    """A password operation was attempted before any password was set."""


class InvalidFileFormat(VaultError):
    """An import document failed structural validation."""


class NetworkFailure(VaultError):
    """A request could not be delivered to the remote endpoint."""
