"""
Vault Crypto Core — Key derivation, envelope encryption and password hashing.

- Envelope layer: HKDF(master_key, "keyvault-envelope") → AEAD → {nonce, ciphertext}
- Password layer: scrypt(password, salt) → verifier stored as ``salt:hash``

Security Note:
    Never log plaintext or ciphertext values.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import hmac
import base64
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..exceptions import CryptoFailure
from .secret import Envelope

logger = logging.getLogger("navigator.keyvault")

NONCE_SIZE = 12  # 96-bit nonce
KEY_LENGTH = 32  # AES-256
SALT_SIZE = 16
TAG_SIZE = 16

ENVELOPE_CONTEXT = "keyvault-envelope"

# scrypt work factors
_SCRYPT_N = 2 ** 14
_SCRYPT_R = 8
_SCRYPT_P = 1


def get_cipher_cls(backend: str = "aesgcm") -> type:
    """Return the AEAD cipher class for a backend name."""
    if backend.lower() == "chacha20":
        return ChaCha20Poly1305
    return AESGCM


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte encryption key using HKDF-SHA256.

    Args:
        seed: Input key material (the master key bytes).
        context: Context string for domain separation.

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # deterministic derivation from the master key
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


# ---------------------------------------------------------------------------
# Envelope encryption
# ---------------------------------------------------------------------------

def seal(plaintext: str, master_key: bytes, backend: str = "aesgcm") -> Envelope:
    """Encrypt a secret into an envelope.

    Args:
        plaintext: Secret to encrypt.
        master_key: Raw 32-byte master key.
        backend: AEAD backend name.

    Returns:
        Envelope with base64 nonce and ciphertext (payload + tag).
    """
    key = derive_key(master_key, ENVELOPE_CONTEXT)
    cipher = get_cipher_cls(backend)(key)
    nonce = os.urandom(NONCE_SIZE)
    ct = cipher.encrypt(nonce, plaintext.encode("utf-8"), None)
    return Envelope(nonce=_b64(nonce), ciphertext=_b64(ct))


def unseal(envelope: Envelope, master_key: bytes, backend: str = "aesgcm") -> str:
    """Decrypt an envelope.

    Raises:
        CryptoFailure: malformed envelope, wrong key or tampered ciphertext.
    """
    try:
        nonce = base64.b64decode(envelope.nonce, validate=True)
        ct = base64.b64decode(envelope.ciphertext, validate=True)
    except ValueError as err:
        raise CryptoFailure(f"Malformed envelope: {err}") from err
    if len(nonce) != NONCE_SIZE:
        raise CryptoFailure(
            f"Invalid nonce length: {len(nonce)} bytes (expected {NONCE_SIZE})"
        )
    if len(ct) < TAG_SIZE:
        raise CryptoFailure(
            f"ciphertext too short: {len(ct)} bytes (minimum {TAG_SIZE})"
        )
    key = derive_key(master_key, ENVELOPE_CONTEXT)
    cipher = get_cipher_cls(backend)(key)
    try:
        data = cipher.decrypt(nonce, ct, None)
    except InvalidTag as err:
        raise CryptoFailure("Decryption failed: authentication tag mismatch") from err
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as err:
        raise CryptoFailure("Decrypted payload is not valid UTF-8") from err


# ---------------------------------------------------------------------------
# Password verifier
# ---------------------------------------------------------------------------

def _scrypt(password: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)
    return kdf.derive(password.encode("utf-8"))


def hash_password(password: str) -> str:
    """Return a ``salt:hash`` verifier (both base64) for a password."""
    salt = os.urandom(SALT_SIZE)
    return f"{_b64(salt)}:{_b64(_scrypt(password, salt))}"


def check_password(password: str, verifier: str) -> bool:
    """Compare a password against a stored ``salt:hash`` verifier.

    Raises:
        CryptoFailure: the stored verifier is corrupted.
    """
    parts = verifier.strip().split(":")
    if len(parts) != 2:
        raise CryptoFailure("Corrupted password data")
    try:
        salt = base64.b64decode(parts[0], validate=True)
        expected = base64.b64decode(parts[1], validate=True)
    except ValueError as err:
        raise CryptoFailure(f"Corrupted password data: {err}") from err
    return hmac.compare_digest(_scrypt(password, salt), expected)
