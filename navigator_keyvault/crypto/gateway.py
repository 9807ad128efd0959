"""
The encryption capability the vault delegates to.

``CryptoGateway`` is the contract any backend must honour (the local
file-backed one lives in ``local.py``).  ``SecretCodec`` wraps a gateway and
applies the vault's fallback rules on top of it:

- ``seal`` degrades to storing plaintext when encryption fails, and reports
  it through ``on_degraded`` so the user can be warned;
- ``open`` passes plaintext through and falls back to the stored value when
  decryption fails or echoes an envelope back;
- ``reveal`` is the strict variant used when a secret must be disclosed.
"""
import logging
from typing import Callable, Optional, Protocol, runtime_checkable

from ..exceptions import CryptoFailure
from .secret import Envelope, Plaintext, is_envelope, parse_secret

logger = logging.getLogger("navigator.keyvault")


@runtime_checkable
class CryptoGateway(Protocol):
    async def encrypt(self, plaintext: str) -> str:
        ...

    async def decrypt(self, value: str) -> str:
        ...

    async def setup_password(self, password: str) -> None:
        ...

    async def verify_password(self, password: str) -> bool:
        ...

    async def has_password(self) -> bool:
        ...

    async def change_password(self, old_password: str, new_password: str) -> None:
        ...


class SecretCodec:
    """Applies the vault's encrypt/decrypt fallback policy to a gateway."""

    def __init__(
        self,
        gateway: CryptoGateway,
        on_degraded: Optional[Callable[[str], None]] = None,
    ):
        self.gateway = gateway
        self._on_degraded = on_degraded

    async def seal(self, plaintext: str) -> str:
        """Encrypt a secret for storage.

        When the gateway fails the plaintext itself is returned so the
        user's key is not lost; this is reported through ``on_degraded``.
        """
        try:
            sealed = await self.gateway.encrypt(plaintext)
        except Exception as err:
            reason = f"Encryption failed, key stored without encryption: {err}"
            logger.warning(reason)
            if self._on_degraded is not None:
                self._on_degraded(reason)
            return plaintext
        if not is_envelope(sealed):
            reason = "Encryption backend returned a non-envelope value, key stored without encryption"
            logger.warning(reason)
            if self._on_degraded is not None:
                self._on_degraded(reason)
            return plaintext
        return sealed

    async def open(self, stored: str) -> str:
        """Decrypt a stored value, never raising.

        Returns the stored value unchanged when it is plaintext, when
        decryption fails, or when the decrypted output is itself an envelope.
        """
        try:
            return await self.reveal(stored)
        except CryptoFailure as err:
            logger.error("Decryption fallback, returning stored value: %s", err)
            return stored

    async def reveal(self, stored: str) -> str:
        """Decrypt a stored value for disclosure.

        Raises:
            CryptoFailure: the envelope could not be decrypted.
        """
        secret = parse_secret(stored)
        if isinstance(secret, Plaintext):
            return secret.value
        try:
            result = await self.gateway.decrypt(stored)
        except CryptoFailure:
            raise
        except Exception as err:
            raise CryptoFailure(f"Decryption failed: {err}") from err
        if isinstance(parse_secret(result), Envelope):
            raise CryptoFailure("Decryption returned envelope-shaped data")
        return result
