from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Annotated, Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "account_deactivated",
    "token_expired",
    "token_invalid",
    "missing_token",
    "mfa_required",
    "mfa_invalid",
    "forbidden",
    "email_not_authorized",
    "setup_disabled",
    "setup_token_invalid",
    "not_found",
    "conflict",
    "already_exists",
    "rate_limited",
    "validation_error",
    "weak_password",
    "redirect_not_allowed",
    "oauth_state_invalid",
    "oauth_provider_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code clients can branch on."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: str) -> str:
    """Usernames are 3-30 characters of letters, digits, ``_``, ``.`` or ``-``."""
    value = _normalize_unicode(value.strip())
    if not 3 <= len(value) <= 30:
        raise ValueError("username must be between 3 and 30 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only letters, digits, underscores, dots, and hyphens"
        )
    return value


# Strength rules are enforced by the password policy so callers get
# ``weak_password`` rather than a generic validation failure.
PasswordField = Annotated[str, Field(min_length=1, max_length=256)]


class RegisterRequest(BaseModel):
    email: str
    username: str
    password: PasswordField
    confirm_password: PasswordField
    full_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)


class LoginRequest(BaseModel):
    email_or_username: str = Field(..., min_length=1, max_length=254)
    password: PasswordField


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class PasswordChangeRequest(BaseModel):
    current_password: PasswordField
    new_password: PasswordField
    confirm_password: PasswordField


class AdminLoginRequest(BaseModel):
    email: str
    password: PasswordField

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)


class MFAVerificationRequest(BaseModel):
    temp_token: str = Field(..., min_length=1, max_length=4096)
    mfa_code: str = Field(..., min_length=1, max_length=32)
    is_backup_code: bool = False


class AdminSetupRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_setup_email(cls, value: str) -> str:
        return _validate_email(value)


class AdminSetupCompleteRequest(BaseModel):
    email: str
    password: PasswordField
    confirm_password: PasswordField
    setup_token: str = Field(..., min_length=1, max_length=512)

    @field_validator("email")
    @classmethod
    def _validate_setup_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordConfirmRequest(BaseModel):
    password: PasswordField


class TOTPCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=10)


class TOTPDisableRequest(BaseModel):
    password: PasswordField
    code: str = Field(..., min_length=6, max_length=10)


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    role: str
    is_active: bool
    is_verified: bool
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    oauth_provider: Optional[str] = None
    created_at: datetime
    last_login: Optional[datetime] = None


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class AuthResponse(BaseModel):
    user: Optional[UserResponse] = None
    tokens: Optional[TokenPairResponse] = None
    message: Optional[str] = None


class ClaimsResponse(BaseModel):
    user_id: str
    username: str
    email: str
    role: str
    issuer: str
    audience: List[str]
    expires_at: int
    issued_at: int
    token_id: str


class ValidateResponse(BaseModel):
    valid: bool
    user: Optional[UserResponse] = None
    claims: Optional[ClaimsResponse] = None


class AdminUserResponse(BaseModel):
    id: str
    email: str
    username: str
    is_admin: bool


class AdminLoginResponse(BaseModel):
    requires_mfa: bool = False
    mfa_type: Optional[str] = None
    temp_token: Optional[str] = None
    token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    user: Optional[AdminUserResponse] = None


class SetupStatusResponse(BaseModel):
    has_admin: bool
    setup_enabled: bool
    # True only when the request carries a valid admin access token
    is_admin: bool = False


class MessageResponse(BaseModel):
    message: str


class MFAStatusResponse(BaseModel):
    enabled: bool
    backup_codes_remaining: int = 0
    recovery_used: int = 0


class TOTPSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    backup_codes: List[str]


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]
