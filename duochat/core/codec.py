"""
At-rest confidentiality for message bodies.

Text content is sealed with AES-256-GCM before it is stored and opened
again when it is rendered. The stored form is ``<nonce hex>:<ciphertext hex>``.
Rows written before encryption was introduced hold plain text; anything that
does not parse or authenticate as a sealed value is returned unchanged.
"""
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from duochat.core.config import settings

logger = logging.getLogger(__name__)

KEY_LEN = 32
NONCE_LEN = 12
SEPARATOR = ":"


class ConfidentialityCodec:
    """Reversible encrypt/decrypt transform for stored message text."""

    def __init__(self, key: bytes):
        if len(key) != KEY_LEN:
            raise ValueError("AES-256-GCM requires 32-byte key")
        self._aead = AESGCM(key)

    @classmethod
    def from_settings(cls) -> "ConfidentialityCodec":
        return cls(bytes.fromhex(settings.message_secret_key))

    def encrypt(self, text: Optional[str]) -> Optional[str]:
        """Seal ``text``. Empty or missing input is returned as-is."""
        if not text:
            return text
        nonce = os.urandom(NONCE_LEN)
        sealed = self._aead.encrypt(nonce, text.encode("utf-8"), None)
        return nonce.hex() + SEPARATOR + sealed.hex()

    def decrypt(self, stored: Optional[str]) -> Optional[str]:
        """
        Open a sealed value.

        Legacy plain text, URLs and values sealed under another key come back
        unchanged, so this is safe to call on already-plaintext input.
        """
        if not stored:
            return stored

        nonce_hex, sep, body_hex = stored.partition(SEPARATOR)
        if not sep:
            return stored

        try:
            nonce = bytes.fromhex(nonce_hex)
            body = bytes.fromhex(body_hex)
        except ValueError:
            return stored
        if len(nonce) != NONCE_LEN:
            return stored

        try:
            return self._aead.decrypt(nonce, body, None).decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            logger.debug("Stored value did not authenticate, treating as plain text")
            return stored


_codec: ConfidentialityCodec = None


def get_codec() -> ConfidentialityCodec:
    """Get or create the process-wide codec built from settings."""
    global _codec
    if _codec is None:
        _codec = ConfidentialityCodec.from_settings()
    return _codec
