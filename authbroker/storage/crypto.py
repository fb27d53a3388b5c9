from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from authbroker.storage.errors import CorruptRecordError


def refresh_token_fingerprint(refresh_token: str) -> str:
    """Stable lookup key for a refresh token; the token itself is stored encrypted."""
    return hashlib.sha256(refresh_token.encode()).hexdigest()


class RefreshTokenCipher:
    """Fernet encryption for refresh tokens at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("refresh token encryption requires key material")
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, refresh_token: str) -> str:
        return self._fernet.encrypt(refresh_token.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise CorruptRecordError("stored refresh token cannot be decrypted") from exc
