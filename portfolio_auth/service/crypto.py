from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from portfolio_auth.service.errors import ServerError


class TokenCipher:
    """Fernet encryption for secrets at rest (TOTP seeds, provider tokens)."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("encryption key material is required")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise ServerError("stored secret could not be decrypted") from exc
