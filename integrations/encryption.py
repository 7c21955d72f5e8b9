"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM (``AESGCM`` from the ``cryptography`` library).  Every call
draws a fresh 12-byte nonce which is prepended to the ciphertext; the
result is standard base64 so it fits a TEXT column.

The encryption key is loaded from ``config.token_encryption_key``
(env var: ``TOKEN_ENCRYPTION_KEY``) as base64 of exactly 32 bytes.
There is no plaintext fallback: a missing key is a startup error.
Generate a key with::

    python -c "from integrations.encryption import generate_key; print(generate_key())"
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config.settings import config
from integrations.errors import TokenDecryptionError

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12


class TokenEncryptor:
    """Authenticated symmetric encryption for stored tokens.  Stateless and reentrant."""

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
            raise ValueError(f"encryption key must be {KEY_SIZE} bytes for AES-256")
        self._aead = AESGCM(bytes(key))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a value produced by :meth:`encrypt`.

        Raises ``TokenDecryptionError`` for anything that is not an intact
        ciphertext under this key: bad base64, a non-canonical encoding,
        a truncated payload or a failed authentication tag.
        """
        if not ciphertext:
            return ""

        try:
            data = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise TokenDecryptionError("ciphertext is not valid base64") from exc

        # Padding bits are ignored by the decoder; reject alternate spellings.
        if base64.b64encode(data).decode("ascii") != ciphertext:
            raise TokenDecryptionError("ciphertext is not canonically encoded")

        if len(data) <= NONCE_SIZE:
            raise TokenDecryptionError("ciphertext too short")

        nonce, sealed = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise TokenDecryptionError("ciphertext failed authentication") from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise TokenDecryptionError("decrypted token is not valid UTF-8") from exc


def generate_key() -> str:
    """Return a fresh random key, base64-encoded for the environment."""
    return base64.urlsafe_b64encode(os.urandom(KEY_SIZE)).decode("ascii")


def key_from_string(value: str) -> bytes:
    """Decode a configured key (urlsafe or standard base64) into raw bytes."""
    normalized = value.strip().replace("-", "+").replace("_", "/")
    try:
        key = base64.b64decode(normalized + "=" * (-len(normalized) % 4), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("TOKEN_ENCRYPTION_KEY is not valid base64") from exc
    if len(key) != KEY_SIZE:
        raise ValueError(
            f"TOKEN_ENCRYPTION_KEY must decode to {KEY_SIZE} bytes, got {len(key)}"
        )
    return key


_encryptor: Optional[TokenEncryptor] = None


def get_token_encryptor() -> TokenEncryptor:
    """Lazy-initialise the process-wide encryptor once."""
    global _encryptor

    if _encryptor is None:
        if not config.token_encryption_key:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY not set — refusing to store OAuth tokens in plaintext. "
                "Generate a key: python -c \"from integrations.encryption import generate_key; print(generate_key())\""
            )
        _encryptor = TokenEncryptor(key_from_string(config.token_encryption_key))
        logger.info("Token encryption enabled (AES-256-GCM)")
    return _encryptor
