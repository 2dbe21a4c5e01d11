"""
Secret Box
==========
Authenticated encryption for OAuth tokens at rest.

Format: ``<nonce hex>:<auth tag hex>:<ciphertext hex>`` using AES-256-GCM with
a fresh 96-bit nonce per call. The key is derived from the operator secret
(``ENCRYPTION_KEY``) with scrypt and a fixed application salt, once per
process.

Without an operator secret the box runs in insecure passthrough mode and
stores ``insecure:<plaintext>``. That is for local development only and is
logged loudly; production refuses to start without a secret.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from sleepolympics.config import Settings, get_settings
from sleepolympics.errors import ConfigurationError, CorruptTokenError

logger = logging.getLogger(__name__)

INSECURE_PREFIX = "insecure:"

_KEY_SALT = b"sleepolympics/oura-token-store/v1"
_KEY_LENGTH = 32
_NONCE_LENGTH = 12
_TAG_LENGTH = 16


@lru_cache(maxsize=4)
def derive_key(secret: str) -> bytes:
    """Derive the 256-bit AES key from the operator secret. Cached per process."""
    kdf = Scrypt(salt=_KEY_SALT, length=_KEY_LENGTH, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


class SecretBox:
    """Encrypts and decrypts token strings."""

    def __init__(self, secret: Optional[str]) -> None:
        self._aead: Optional[AESGCM] = AESGCM(derive_key(secret)) if secret else None
        if self._aead is None:
            logger.warning(
                "ENCRYPTION_KEY is not set: Oura tokens will be stored UNENCRYPTED "
                "(insecure passthrough mode, development only)"
            )

    @property
    def is_insecure(self) -> bool:
        return self._aead is None

    def encrypt(self, plaintext: str) -> str:
        if self._aead is None:
            logger.warning("Storing token in insecure passthrough mode")
            return f"{INSECURE_PREFIX}{plaintext}"

        nonce = os.urandom(_NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        body, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
        return f"{nonce.hex()}:{tag.hex()}:{body.hex()}"

    def decrypt(self, token: str) -> str:
        """Return the plaintext or raise CorruptTokenError."""
        if not isinstance(token, str) or not token:
            raise CorruptTokenError("Empty token")

        if token.startswith(INSECURE_PREFIX):
            logger.warning("Reading token stored in insecure passthrough mode")
            return token[len(INSECURE_PREFIX):]

        if self._aead is None:
            raise CorruptTokenError("Encrypted token found but no ENCRYPTION_KEY is configured")

        parts = token.split(":")
        if len(parts) != 3:
            raise CorruptTokenError("Malformed token encoding")
        try:
            nonce, tag, body = (bytes.fromhex(part) for part in parts)
        except ValueError as exc:
            raise CorruptTokenError("Malformed token encoding") from exc
        if len(nonce) != _NONCE_LENGTH or len(tag) != _TAG_LENGTH:
            raise CorruptTokenError("Malformed token encoding")

        try:
            plaintext = self._aead.decrypt(nonce, body + tag, None)
        except InvalidTag as exc:
            raise CorruptTokenError("Token failed authentication") from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CorruptTokenError("Token is not valid UTF-8") from exc


def build_secret_box(settings: Settings) -> SecretBox:
    """Build the box for *settings*, refusing insecure mode in production."""
    if not settings.encryption_key and settings.is_production:
        raise ConfigurationError("ENCRYPTION_KEY must be set in production")
    return SecretBox(settings.encryption_key or None)


@lru_cache
def get_secret_box() -> SecretBox:
    return build_secret_box(get_settings())
