from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from kubedeck.exceptions import BadKeyError, CorruptError, IntegrityCheckError


KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise BadKeyError(f"encryption key must be exactly {KEY_SIZE} bytes")


def seal(plaintext: bytes, key: bytes) -> bytes:
    """AES-256-GCM encrypt; the random nonce is prepended to the output."""
    _check_key(key)
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(bytes(key)).encrypt(nonce, bytes(plaintext), None)


def unseal(ciphertext: bytes, key: bytes) -> bytes:
    _check_key(key)
    if ciphertext is None or len(ciphertext) < NONCE_SIZE + TAG_SIZE:
        raise CorruptError("sealed data is truncated")
    nonce, body = bytes(ciphertext[:NONCE_SIZE]), bytes(ciphertext[NONCE_SIZE:])
    try:
        return AESGCM(bytes(key)).decrypt(nonce, body, None)
    except InvalidTag:
        raise IntegrityCheckError("sealed data failed integrity check") from None


def parse_key(value: str | bytes | None) -> bytes | None:
    """Interpret a configured key: 32 raw characters or base64 of 32 bytes."""
    if value is None:
        return None
    raw = value.encode() if isinstance(value, str) else bytes(value)
    raw = raw.strip()
    if not raw:
        return None
    if len(raw) == KEY_SIZE:
        return raw
    try:
        decoded = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise BadKeyError(f"encryption key must be {KEY_SIZE} bytes or base64 of {KEY_SIZE} bytes") from None
    _check_key(decoded)
    return decoded


class CredentialVault:
    """Binds a key to seal/unseal; used only for kubeconfigs at rest."""

    def __init__(self, key: bytes):
        _check_key(key)
        self._key = bytes(key)

    @classmethod
    def from_setting(cls, value: str | bytes | None) -> "CredentialVault":
        key = parse_key(value)
        if key is None:
            raise BadKeyError("encryption key is empty")
        return cls(key)

    @classmethod
    def ephemeral(cls) -> "CredentialVault":
        return cls(AESGCM.generate_key(bit_length=256))

    def seal(self, plaintext: bytes) -> bytes:
        return seal(plaintext, self._key)

    def unseal(self, ciphertext: bytes) -> bytes:
        return unseal(ciphertext, self._key)

    def __repr__(self) -> str:
        return "CredentialVault(key=***)"
