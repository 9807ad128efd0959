"""Key encryption: envelope format, gateway contract and local backend.

Security Note (Threat Model):
    Keys are decrypted in process memory only while they are being disclosed,
    edited or tested.  Anyone able to read the data directory obtains both the
    master key and the ciphertext; the password gates disclosure inside the
    application, it does not add a layer of encryption.
"""

from .secret import Envelope, Plaintext, Secret, is_envelope, parse_secret
from .gateway import CryptoGateway, SecretCodec
from .local import LocalCryptoGateway

__all__ = [
    "CryptoGateway",
    "Envelope",
    "LocalCryptoGateway",
    "Plaintext",
    "Secret",
    "SecretCodec",
    "is_envelope",
    "parse_secret",
]
