from __future__ import annotations

import hashlib
import os
import re
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from bridgekeeper.errors import ConfigurationError, DecryptionError

KEY_ENV = "BRIDGEKEEPER_ENCRYPTION_KEY"
LEGACY_KEY_ENV = "ENCRYPTION_KEY"

NONCE_SIZE = 16
TAG_SIZE = 16

_HEX_FIELD = re.compile(r"[0-9a-f]+")


def derive_key(secret: str) -> bytes:
    """Derive the 256-bit codec key from a configured secret.

    A 64 character hex string is decoded directly, a secret that is exactly
    32 bytes of UTF-8 is used as-is, anything else is hashed with SHA-256.
    """
    if not secret:
        raise ConfigurationError(f"Set {KEY_ENV} (or {LEGACY_KEY_ENV}) to enable credential encryption.")

    if len(secret) == 64:
        try:
            return bytes.fromhex(secret)
        except ValueError:
            pass

    raw = secret.encode("utf-8")
    if len(raw) == 32:
        return raw
    return hashlib.sha256(raw).digest()


class SecretCodec:
    """AES-256-GCM codec producing ``nonce:tag:body`` hex strings."""

    def __init__(self, secret: str) -> None:
        self._aead = AESGCM(derive_key(secret))

    @classmethod
    def from_env(cls) -> SecretCodec:
        secret = os.getenv(KEY_ENV) or os.getenv(LEGACY_KEY_ENV)
        if not secret:
            raise ConfigurationError(f"Set {KEY_ENV} (or {LEGACY_KEY_ENV}) to enable credential encryption.")
        return cls(secret)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        body, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return ":".join((nonce.hex(), tag.hex(), body.hex()))

    def decrypt(self, ciphertext: str) -> str:
        parts = ciphertext.split(":")
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted data format")

        nonce_hex, tag_hex, body_hex = parts
        for field in (nonce_hex, tag_hex):
            if not _HEX_FIELD.fullmatch(field):
                raise DecryptionError("Invalid encrypted data format")
        # An empty plaintext encrypts to an empty body.
        if body_hex and not _HEX_FIELD.fullmatch(body_hex):
            raise DecryptionError("Invalid encrypted data format")

        try:
            nonce = bytes.fromhex(nonce_hex)
            tag = bytes.fromhex(tag_hex)
            body = bytes.fromhex(body_hex)
        except ValueError as exc:
            raise DecryptionError("Invalid encrypted data format") from exc

        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise DecryptionError("Invalid encrypted data format")

        try:
            plaintext = self._aead.decrypt(nonce, body + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Ciphertext failed authentication") from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted payload is not valid UTF-8") from exc


@lru_cache(maxsize=1)
def get_codec() -> SecretCodec:
    """Return the process-wide codec, deriving the key on first use."""
    return SecretCodec.from_env()
