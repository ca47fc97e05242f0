from __future__ import annotations

import asyncio
import hmac
import secrets
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from portfolio_auth.logging import get_logger, log_security_event
from portfolio_auth.service.credentials import (
    CredentialService,
    UserStore,
    normalize_email,
)
from portfolio_auth.service.crypto import TokenCipher
from portfolio_auth.service.email import EmailService
from portfolio_auth.service.errors import (
    AccountDeactivatedError,
    AlreadyExistsError,
    ConflictError,
    EmailNotAuthorizedError,
    InvalidCredentialsError,
    MFAInvalidError,
    RateLimitedError,
    ServerError,
    SetupDisabledError,
    SetupTokenInvalidError,
    TokenInvalidError,
    ValidationError,
)
from portfolio_auth.service.ratelimit import RateLimiter, mfa_key
from portfolio_auth.service.refresh_store import Cache
from portfolio_auth.service.tokens import (
    MFA_PENDING_SUBJECT,
    TOKEN_TYPE_MFA_PENDING,
    TokenPair,
)
from portfolio_auth.service import totp
from portfolio_auth.storage.errors import ConstraintViolation, StorageUnavailable
from portfolio_auth.storage.models import (
    USED_BACKUP_CODE,
    MFAEvent,
    User,
    UserMFAConfig,
    utcnow,
)

logger = get_logger(__name__)

ADMIN_ROLE = "admin"
SETUP_TOKEN_PREFIX = "admin_setup:"


def email_allowed(email: str, allowed: Iterable[str]) -> bool:
    """Exact address or ``@domain`` suffix match, case insensitive."""
    normalized = normalize_email(email)
    if not normalized or "@" not in normalized:
        return False
    for entry in allowed:
        entry = entry.strip().lower()
        if not entry:
            continue
        if entry.startswith("@"):
            if normalized.endswith(entry):
                return True
        elif normalized == entry:
            return True
    return False


def username_from_email(email: str) -> str:
    local = normalize_email(email).split("@", 1)[0]
    return local.replace(".", "_").replace("+", "_") or "admin"


@dataclass
class AdminLoginResult:
    user: User
    tokens: Optional[TokenPair] = None
    requires_mfa: bool = False
    temp_token: Optional[str] = None
    mfa_type: Optional[str] = None


@dataclass
class TOTPSetup:
    secret: str
    otpauth_uri: str
    backup_codes: List[str] = field(default_factory=list)


class AdminAuthService:
    """Allow-listed admin login with optional TOTP and one-time bootstrap.

    The allow-list is checked before any password work everywhere an admin
    flow is entered. MFA attempts are audited as ``MFAEvent`` rows and
    throttled per user through the auth limiter.
    """

    def __init__(
        self,
        store: UserStore,
        credentials: CredentialService,
        cipher: TokenCipher,
        cache: Cache,
        email_service: EmailService,
        mfa_limiter: RateLimiter,
        *,
        allowed_emails: Iterable[str] = (),
        setup_token: Optional[str] = None,
        setup_enabled: bool = True,
        setup_token_ttl_hours: int = 24,
        totp_issuer: str = "Portfolio-DevPanel",
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.codec = credentials.codec
        self.passwords = credentials.passwords
        self.cipher = cipher
        self.cache = cache
        self.email_service = email_service
        self.mfa_limiter = mfa_limiter
        self.allowed_emails = [e.strip().lower() for e in allowed_emails if e.strip()]
        self.setup_token = setup_token
        self.setup_enabled = setup_enabled
        self.setup_token_ttl_hours = setup_token_ttl_hours
        self.totp_issuer = totp_issuer
        self.logger = logger

    # allow-list
    def validate_admin_email(self, email: str) -> bool:
        return email_allowed(email, self.allowed_emails)

    def _require_allowed(self, email: str, action: str) -> str:
        if not self.validate_admin_email(email):
            log_security_event("admin_email_rejected", action=action, email=email)
            raise EmailNotAuthorizedError()
        return normalize_email(email)

    # login
    async def login(self, email: str, password: str) -> AdminLoginResult:
        email = self._require_allowed(email, "login")
        user = self.store.get_user_by_email(email)
        try:
            await self.credentials.verify_user_password(user, password)
        except InvalidCredentialsError:
            log_security_event("admin_login_failed", email=email)
            raise
        if user.role != ADMIN_ROLE:
            log_security_event("admin_login_not_admin", user_id=user.id)
            raise InvalidCredentialsError()
        if not user.is_active:
            raise AccountDeactivatedError()

        cfg = self.store.get_mfa_config(user.id)
        if cfg and cfg.enabled:
            temp_token = self.codec.issue_temp_token(
                user.id, user.username, user.email, user.role
            )
            self.logger.info("admin_login_mfa_pending", user_id=user.id)
            return AdminLoginResult(
                user=user, requires_mfa=True, temp_token=temp_token, mfa_type="totp"
            )
        return AdminLoginResult(user=user, tokens=await self._complete_login(user))

    async def _complete_login(self, user: User) -> TokenPair:
        user.last_login = utcnow()
        self.store.save_user(user)
        pair = await self.credentials.issue_pair_for(user)
        self.logger.info("admin_login_succeeded", user_id=user.id)
        return pair

    def _user_from_temp_token(self, temp_token: str) -> User:
        claims = self.codec.verify(temp_token)
        if claims.subject != MFA_PENDING_SUBJECT or claims.token_type != TOKEN_TYPE_MFA_PENDING:
            raise TokenInvalidError("invalid temporary token")
        user = self.store.get_user(claims.user_id)
        if not user or user.role != ADMIN_ROLE:
            raise TokenInvalidError("invalid temporary token")
        if not user.is_active:
            raise AccountDeactivatedError()
        self._require_allowed(user.email, "mfa_verify")
        return user

    async def verify_mfa_and_login(
        self,
        temp_token: str,
        code: str,
        is_backup_code: bool = False,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AdminLoginResult:
        user = self._user_from_temp_token(temp_token)
        limiter_key = mfa_key(user.id)
        if self.mfa_limiter.is_blocked(limiter_key):
            retry_after = self.mfa_limiter.retry_after(limiter_key)
            log_security_event("mfa_locked", user_id=user.id, retry_after=retry_after)
            raise RateLimitedError("too many MFA attempts", retry_after=retry_after)

        cfg = self.store.get_mfa_config(user.id)
        if not cfg or not cfg.enabled:
            raise MFAInvalidError("MFA is not enabled")

        if is_backup_code:
            used = await self._consume_backup_code(cfg, code)
            if not used:
                self._record_event(user.id, "recovery_failed", False, ip_address, user_agent)
                self.mfa_limiter.record_failure(limiter_key)
                raise MFAInvalidError("invalid backup code")
            self._record_event(user.id, "recovery_used", True, ip_address, user_agent)
        else:
            secret = self.cipher.decrypt(cfg.secret)
            if not totp.verify_totp(secret, code):
                self._record_event(user.id, "failed", False, ip_address, user_agent)
                self.mfa_limiter.record_failure(limiter_key)
                raise MFAInvalidError("invalid TOTP code")
            self._record_event(user.id, "verified", True, ip_address, user_agent)

        self.mfa_limiter.reset(limiter_key)
        return AdminLoginResult(user=user, tokens=await self._complete_login(user))

    async def _consume_backup_code(self, cfg: UserMFAConfig, code: str) -> bool:
        normalized = totp.normalize_backup_code(code)
        if not normalized:
            return False
        for index, hashed in enumerate(cfg.backup_codes):
            if hashed == USED_BACKUP_CODE:
                continue
            matches = await asyncio.to_thread(self.passwords.verify_secret, hashed, normalized)
            if matches:
                # The store refuses a slot that a concurrent request already took
                return self.store.consume_backup_code(cfg.user_id, index)
        return False

    def _record_event(
        self,
        user_id: str,
        event_type: str,
        success: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.store.record_mfa_event(
            MFAEvent(
                user_id=user_id,
                event_type=event_type,
                success=success,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        log_security_event(
            f"mfa_{event_type}",
            user_id=user_id,
            success=success,
            ip_address=ip_address,
        )

    # bootstrap
    def has_admin_account(self) -> bool:
        return self.store.count_admins() > 0

    def _setup_key(self, token: str) -> str:
        return f"{SETUP_TOKEN_PREFIX}{token}"

    async def request_setup(self, email: str) -> int:
        """Issue a one-time setup token for ``email``; returns its lifetime in hours."""
        email = self._require_allowed(email, "setup_request")
        if not self.setup_enabled:
            raise SetupDisabledError("admin setup is disabled")
        if self.has_admin_account():
            raise ConflictError("admin account already exists")
        token = secrets.token_urlsafe(32)
        ttl_seconds = self.setup_token_ttl_hours * 3600
        try:
            await self.cache.set_json(self._setup_key(token), {"email": email}, ttl_seconds)
        except StorageUnavailable as exc:
            self.logger.error("admin_setup_token_store_failed", error=str(exc))
            raise ServerError("unable to issue setup token") from exc
        sent = await asyncio.to_thread(
            self.email_service.send_admin_setup_email,
            email,
            token,
            self.setup_token_ttl_hours,
        )
        if not sent:
            await self.cache.delete(self._setup_key(token))
            raise ServerError("failed to send setup email")
        self.logger.info("admin_setup_requested")
        return self.setup_token_ttl_hours

    async def _setup_token_valid(self, email: str, setup_token: str) -> bool:
        if not setup_token:
            return False
        if self.setup_token and hmac.compare_digest(
            self.setup_token.encode(), setup_token.encode()
        ):
            return True
        try:
            data = await self.cache.get_json(self._setup_key(setup_token))
        except StorageUnavailable as exc:
            self.logger.warning("admin_setup_token_lookup_failed", error=str(exc))
            return False
        return isinstance(data, dict) and data.get("email") == email

    def _unique_username(self, email: str) -> str:
        base = username_from_email(email)
        candidate = base
        while self.store.get_user_by_username(candidate):
            candidate = f"{base}_{secrets.token_hex(2)}"
        return candidate

    async def complete_setup(
        self,
        email: str,
        password: str,
        confirm_password: str,
        setup_token: str,
    ) -> User:
        email = self._require_allowed(email, "setup_complete")
        if not self.setup_enabled:
            raise SetupDisabledError("admin setup is disabled")
        if not self.passwords.passwords_match(password, confirm_password):
            raise ValidationError("passwords do not match")
        if not await self._setup_token_valid(email, setup_token):
            log_security_event("admin_setup_token_rejected", email=email)
            raise SetupTokenInvalidError("invalid setup token")
        if self.has_admin_account():
            raise ConflictError("admin account already exists")
        if self.store.get_user_by_email(email):
            raise AlreadyExistsError("user with this email already exists")

        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        user = User.new(
            email, self._unique_username(email), role=ADMIN_ROLE, is_verified=True
        )
        try:
            user = self.store.create_user(user)
        except ConstraintViolation:
            raise AlreadyExistsError("user with this email already exists")
        self.store.save_password(user.id, password_hash, "argon2id")
        try:
            await self.cache.delete(self._setup_key(setup_token))
        except StorageUnavailable as exc:
            self.logger.warning("admin_setup_token_cleanup_failed", error=str(exc))
        log_security_event("admin_account_created", user_id=user.id)
        return user

    # TOTP enrollment
    def _get_admin(self, user_id: str) -> User:
        user = self.credentials.get_profile(user_id)
        if user.role != ADMIN_ROLE:
            raise InvalidCredentialsError()
        return user

    async def _hash_backup_codes(self, codes: List[str]) -> List[str]:
        return [
            await asyncio.to_thread(
                self.passwords.hash_secret, totp.normalize_backup_code(code)
            )
            for code in codes
        ]

    async def setup_totp(self, user_id: str, password: str) -> TOTPSetup:
        user = self._get_admin(user_id)
        await self.credentials.verify_user_password(user, password)
        existing = self.store.get_mfa_config(user.id)
        if existing and existing.enabled:
            raise ConflictError("MFA is already enabled")
        secret = totp.generate_secret()
        codes = totp.generate_backup_codes()
        self.store.save_mfa_config(
            UserMFAConfig(
                user_id=user.id,
                secret=self.cipher.encrypt(secret),
                enabled=False,
                backup_codes=await self._hash_backup_codes(codes),
            )
        )
        self.logger.info("mfa_setup_started", user_id=user.id)
        return TOTPSetup(
            secret=secret,
            otpauth_uri=totp.provisioning_uri(secret, user.email, self.totp_issuer),
            backup_codes=codes,
        )

    async def enable_totp(self, user_id: str, code: str) -> None:
        user = self._get_admin(user_id)
        cfg = self.store.get_mfa_config(user.id)
        if not cfg:
            raise ValidationError("MFA setup has not been started")
        if cfg.enabled:
            raise ConflictError("MFA is already enabled")
        if not totp.verify_totp(self.cipher.decrypt(cfg.secret), code):
            self._record_event(user.id, "failed", False)
            raise MFAInvalidError("invalid TOTP code")
        cfg.enabled = True
        self.store.save_mfa_config(cfg)
        self._record_event(user.id, "enabled", True)

    async def disable_totp(self, user_id: str, password: str, code: str) -> None:
        user = self._get_admin(user_id)
        await self.credentials.verify_user_password(user, password)
        cfg = self.store.get_mfa_config(user.id)
        if not cfg or not cfg.enabled:
            raise ValidationError("MFA is not enabled")
        if not totp.verify_totp(self.cipher.decrypt(cfg.secret), code):
            self._record_event(user.id, "failed", False)
            raise MFAInvalidError("invalid TOTP code")
        self.store.delete_mfa_config(user.id)
        self._record_event(user.id, "disabled", True)

    def mfa_status(self, user_id: str) -> dict:
        user = self._get_admin(user_id)
        cfg = self.store.get_mfa_config(user.id)
        return {
            "enabled": bool(cfg and cfg.enabled),
            "backup_codes_remaining": cfg.remaining_backup_codes if cfg else 0,
            "recovery_used": cfg.recovery_used if cfg else 0,
        }

    async def regenerate_backup_codes(self, user_id: str, password: str) -> List[str]:
        user = self._get_admin(user_id)
        await self.credentials.verify_user_password(user, password)
        cfg = self.store.get_mfa_config(user.id)
        if not cfg or not cfg.enabled:
            raise ValidationError("MFA is not enabled")
        codes = totp.generate_backup_codes()
        cfg.backup_codes = await self._hash_backup_codes(codes)
        self.store.save_mfa_config(cfg)
        self._record_event(user.id, "backup_codes_regenerated", True)
        return codes
