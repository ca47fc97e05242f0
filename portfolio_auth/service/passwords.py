from __future__ import annotations

import hmac
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from portfolio_auth.service.errors import (
    PasswordMismatchError,
    PasswordTooLongError,
    PasswordTooShortError,
    PasswordTooWeakError,
)

MIN_PASSWORD_LENGTH = 8
# Upper bound on encoded length, kept from the bcrypt-era contract
MAX_PASSWORD_BYTES = 72
SPECIAL_CHARACTERS = frozenset("!@#$%^&*()-_+={}[]|\\:;\"'<>,.?/")
PASSWORD_ALGO = "argon2id"


class PasswordPolicy:
    """Strength validation plus argon2id hashing for user credentials.

    Hashing and verification are CPU bound; async callers run them through
    ``asyncio.to_thread`` and never while holding a lock.
    """

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    @staticmethod
    def validate_strength(password: str) -> None:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise PasswordTooShortError(
                f"password is too short, must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        has_upper = any(ch.isupper() for ch in password)
        has_lower = any(ch.islower() for ch in password)
        has_digit = any(ch.isdigit() for ch in password)
        has_special = any(ch in SPECIAL_CHARACTERS for ch in password)
        if not (has_upper and has_lower and has_digit and has_special):
            raise PasswordTooWeakError(
                "password is too weak, must contain uppercase, lowercase, digit, and special character"
            )

    def hash(self, password: str) -> str:
        self.validate_strength(password)
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise PasswordTooLongError(
                f"password is too long, must be at most {MAX_PASSWORD_BYTES} bytes"
            )
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> None:
        """Raise ``PasswordMismatchError`` unless ``password`` matches the hash.

        Malformed hashes and wrong passwords produce the same error.
        """
        try:
            self._hasher.verify(password_hash, password)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            raise PasswordMismatchError()

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def hash_secret(self, value: str) -> str:
        """Hash a non-password secret (backup codes) without strength rules."""
        return self._hasher.hash(value)

    def verify_secret(self, secret_hash: str, value: str) -> bool:
        try:
            return self._hasher.verify(secret_hash, value)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    @staticmethod
    def passwords_match(password: str, confirm_password: str) -> bool:
        return hmac.compare_digest(password.encode("utf-8"), confirm_password.encode("utf-8"))
