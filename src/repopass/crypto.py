"""Encrypt/decrypt boundary for merchant secrets stored at rest.

Values are sealed with AES-256-GCM. The key is derived per value with
scrypt from the configured encryption secret and a random salt, and the
stored form is ``base64(salt | nonce | ciphertext+tag)``.
"""
from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .exceptions import ConfigurationError

_SALT_LEN = 16
_NONCE_LEN = 12
_KEY_LEN = 32


class DecryptionError(ConfigurationError):
    """Stored value could not be decrypted with the configured secret."""

    error_code = "DECRYPTION_FAILED"


class CredentialCipher:
    """AES-256-GCM cipher keyed from the application encryption secret."""

    def __init__(self, secret: str, *, scrypt_n: int = 2**14) -> None:
        if not secret:
            raise ConfigurationError("Encryption secret is not configured")
        self._secret = secret.encode("utf-8")
        self._scrypt_n = scrypt_n

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = Scrypt(salt=salt, length=_KEY_LEN, n=self._scrypt_n, r=8, p=1)
        return kdf.derive(self._secret)

    def encrypt(self, plaintext: str) -> str:
        salt = os.urandom(_SALT_LEN)
        nonce = os.urandom(_NONCE_LEN)
        sealed = AESGCM(self._derive_key(salt)).encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.urlsafe_b64encode(salt + nonce + sealed).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
        except (ValueError, UnicodeEncodeError) as e:
            raise DecryptionError("Stored value is not valid ciphertext") from e
        if len(raw) <= _SALT_LEN + _NONCE_LEN:
            raise DecryptionError("Stored value is truncated")
        salt = raw[:_SALT_LEN]
        nonce = raw[_SALT_LEN:_SALT_LEN + _NONCE_LEN]
        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(
                nonce, raw[_SALT_LEN + _NONCE_LEN:], None
            )
        except InvalidTag as e:
            raise DecryptionError("Stored value failed authentication") from e
        return plaintext.decode("utf-8")

    def encrypt_fields(self, fields: dict[str, str]) -> dict[str, str]:
        return {name: self.encrypt(value) for name, value in fields.items() if value}

    def decrypt_fields(self, fields: dict[str, str]) -> dict[str, str]:
        return {name: self.decrypt(value) for name, value in fields.items() if value}
