"""Unit tests for the password policy.

Tests for:
- Strength rules (length, character classes)
- argon2id hashing and verification
- Backup-code secret hashing
"""

import pytest

from portfolio_auth.service.errors import (
    PasswordMismatchError,
    PasswordTooLongError,
    PasswordTooShortError,
    PasswordTooWeakError,
    WeakPasswordError,
)
from portfolio_auth.service.passwords import PASSWORD_ALGO, PasswordPolicy


@pytest.fixture
def policy():
    return PasswordPolicy()


class TestStrengthRules:
    """Each missing requirement is rejected on its own."""

    @pytest.mark.parametrize(
        "password",
        [
            "Sh0rt!",  # length
            "str0ng!pass",  # uppercase
            "STR0NG!PASS",  # lowercase
            "Strong!Pass",  # digit
            "Str0ngPass1",  # special
        ],
    )
    def test_missing_requirement_fails(self, password):
        with pytest.raises(WeakPasswordError):
            PasswordPolicy.validate_strength(password)

    def test_short_password_message(self):
        with pytest.raises(PasswordTooShortError) as exc_info:
            PasswordPolicy.validate_strength("Ab1!")
        assert exc_info.value.message == "password is too short, must be at least 8 characters"
        assert exc_info.value.error_code == "weak_password"
        assert exc_info.value.status_code == 400

    def test_weak_password_message(self):
        with pytest.raises(PasswordTooWeakError) as exc_info:
            PasswordPolicy.validate_strength("alllowercase1!")
        assert "uppercase, lowercase, digit, and special character" in exc_info.value.message

    def test_strong_password_passes(self, strong_password):
        PasswordPolicy.validate_strength(strong_password)


class TestHashing:
    def test_hash_is_salted_and_verifies(self, policy, strong_password):
        first = policy.hash(strong_password)
        second = policy.hash(strong_password)

        assert first != second
        assert first != strong_password
        assert first.startswith("$argon2id$")
        policy.verify(first, strong_password)
        policy.verify(second, strong_password)
        assert PASSWORD_ALGO == "argon2id"

    def test_wrong_password_raises_mismatch(self, policy, strong_password):
        hashed = policy.hash(strong_password)
        with pytest.raises(PasswordMismatchError):
            policy.verify(hashed, "Wr0ng!Pass")

    def test_malformed_hash_is_a_mismatch(self, policy, strong_password):
        with pytest.raises(PasswordMismatchError):
            policy.verify("not-a-hash", strong_password)
        assert policy.needs_rehash("not-a-hash") is True

    def test_hash_rejects_weak_password(self, policy):
        with pytest.raises(PasswordTooShortError):
            policy.hash("Ab1!")

    def test_hash_rejects_overlong_password(self, policy):
        with pytest.raises(PasswordTooLongError):
            policy.hash("Aa1!" + "x" * 80)

    def test_fresh_hash_does_not_need_rehash(self, policy, strong_password):
        assert policy.needs_rehash(policy.hash(strong_password)) is False


class TestSecrets:
    def test_secret_hash_skips_strength_rules(self, policy):
        hashed = policy.hash_secret("123456789012")
        assert policy.verify_secret(hashed, "123456789012") is True
        assert policy.verify_secret(hashed, "000000000000") is False

    def test_passwords_match(self):
        assert PasswordPolicy.passwords_match("Str0ng!Pass", "Str0ng!Pass")
        assert not PasswordPolicy.passwords_match("Str0ng!Pass", "Str0ng!Pas")
