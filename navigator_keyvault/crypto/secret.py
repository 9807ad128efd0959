"""
Stored secret representation.

A stored key is either an encryption envelope, the JSON object
``{"nonce": <b64>, "ciphertext": <b64>}``, or a plaintext string kept from
before encryption existed (or written when encryption degraded).
``parse_secret`` is the single place where that decision is made, and it is
made on structure only.
"""
from dataclasses import dataclass
from typing import Union

import orjson


@dataclass(frozen=True)
class Plaintext:
    value: str


@dataclass(frozen=True)
class Envelope:
    nonce: str
    ciphertext: str

    def dumps(self) -> str:
        return orjson.dumps(
            {"nonce": self.nonce, "ciphertext": self.ciphertext}
        ).decode("utf-8")


Secret = Union[Plaintext, Envelope]


def parse_secret(value: str) -> Secret:
    """Classify a stored value as an Envelope or as Plaintext.

    Args:
        value: the stored key string.

    Returns:
        Envelope when ``value`` is a JSON object carrying non-empty string
        ``nonce`` and ``ciphertext`` members, Plaintext otherwise.
    """
    if not value.lstrip().startswith("{"):
        return Plaintext(value)
    try:
        parsed = orjson.loads(value)
    except orjson.JSONDecodeError:
        return Plaintext(value)
    if not isinstance(parsed, dict):
        return Plaintext(value)
    nonce = parsed.get("nonce")
    ciphertext = parsed.get("ciphertext")
    if (
        isinstance(nonce, str) and nonce
        and isinstance(ciphertext, str) and ciphertext
    ):
        return Envelope(nonce=nonce, ciphertext=ciphertext)
    return Plaintext(value)


def is_envelope(value: str) -> bool:
    return isinstance(parse_secret(value), Envelope)
