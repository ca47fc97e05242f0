from __future__ import annotations

import asyncio
import threading
from typing import List, Optional, Protocol, Tuple

from portfolio_auth.logging import get_logger
from portfolio_auth.service.errors import (
    AccountDeactivatedError,
    AlreadyExistsError,
    InvalidCredentialsError,
    MFARequiredError,
    NotFoundError,
    PasswordMismatchError,
    RefreshTokenNotFoundError,
    ServerError,
    ValidationError,
)
from portfolio_auth.service.passwords import PASSWORD_ALGO, PasswordPolicy
from portfolio_auth.service.refresh_store import RefreshTokenStore
from portfolio_auth.service.tokens import (
    TOKEN_TYPE_ACCESS,
    Claims,
    TokenCodec,
    TokenPair,
)
from portfolio_auth.storage.errors import ConstraintViolation, StorageUnavailable
from portfolio_auth.storage.models import (
    MFAEvent,
    OAuthTokenRecord,
    User,
    UserAuthCredential,
    UserMFAConfig,
    utcnow,
)

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def save_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def count_admins(self) -> int: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str = ...
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[UserAuthCredential]: ...

    def save_mfa_config(self, config: UserMFAConfig) -> UserMFAConfig: ...

    def get_mfa_config(self, user_id: str) -> Optional[UserMFAConfig]: ...

    def delete_mfa_config(self, user_id: str) -> None: ...

    def consume_backup_code(self, user_id: str, index: int) -> bool: ...

    def record_mfa_event(self, event: MFAEvent) -> MFAEvent: ...

    def list_mfa_events(self, user_id: str, limit: int = ...) -> List[MFAEvent]: ...

    def upsert_oauth_token(self, record: OAuthTokenRecord) -> OAuthTokenRecord: ...

    def get_oauth_token(self, user_id: str, provider: str) -> Optional[OAuthTokenRecord]: ...


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialService:
    """Registration, password login, refresh, and account lifecycle."""

    def __init__(
        self,
        store: UserStore,
        passwords: PasswordPolicy,
        codec: TokenCodec,
        refresh_store: RefreshTokenStore,
        *,
        rotate_refresh_tokens: bool = True,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.codec = codec
        self.refresh_store = refresh_store
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.logger = logger
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()

    def _timing_hash(self) -> str:
        # Verified against when the user is unknown so both paths cost the same
        with self._dummy_lock:
            if self._dummy_hash is None:
                self._dummy_hash = self.passwords.hash_secret("timing-equalizer-Pw1!")
            return self._dummy_hash

    async def verify_user_password(self, user: Optional[User], password: str) -> None:
        """Raise ``InvalidCredentialsError`` unless ``password`` is the user's.

        An unknown user still pays for one hash verification.
        """
        record = self.store.get_password_record(user.id) if user else None
        if record is None:
            dummy = await asyncio.to_thread(self._timing_hash)
            await asyncio.to_thread(self.passwords.verify_secret, dummy, password)
            raise InvalidCredentialsError()
        try:
            await asyncio.to_thread(self.passwords.verify, record.password_hash, password)
        except PasswordMismatchError:
            raise InvalidCredentialsError()
        if self.passwords.needs_rehash(record.password_hash):
            new_hash = await asyncio.to_thread(self.passwords.hash_secret, password)
            self.store.save_password(user.id, new_hash, PASSWORD_ALGO)
            self.logger.info("password_rehashed", user_id=user.id)

    def find_user(self, email_or_username: str) -> Optional[User]:
        identifier = (email_or_username or "").strip()
        if not identifier:
            return None
        if "@" in identifier:
            return self.store.get_user_by_email(normalize_email(identifier))
        return self.store.get_user_by_username(identifier)

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        full_name: Optional[str] = None,
    ) -> User:
        email = normalize_email(email)
        username = (username or "").strip()
        if not email or not username:
            raise ValidationError("email and username are required")
        if self.store.get_user_by_email(email):
            raise AlreadyExistsError("user with this email already exists")
        if self.store.get_user_by_username(username):
            raise AlreadyExistsError("user with this username already exists")
        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        user = User.new(email, username, full_name=full_name)
        try:
            user = self.store.create_user(user)
        except ConstraintViolation as exc:
            raise AlreadyExistsError(
                f"user with this {exc.detail.get('field', 'email')} already exists"
            )
        self.store.save_password(user.id, password_hash, PASSWORD_ALGO)
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def login(self, email_or_username: str, password: str) -> Tuple[User, TokenPair]:
        user = self.find_user(email_or_username)
        try:
            await self.verify_user_password(user, password)
        except InvalidCredentialsError:
            self.logger.info("login_failed", user_id=user.id if user else None)
            raise
        if not user.is_active:
            self.logger.info("login_rejected_inactive", user_id=user.id)
            raise AccountDeactivatedError()
        user.last_login = utcnow()
        self.store.save_user(user)
        pair = await self.issue_pair_for(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, pair

    async def issue_pair_for(self, user: User) -> TokenPair:
        try:
            return await self.codec.issue_pair(user.id, user.username, user.email, user.role)
        except StorageUnavailable as exc:
            self.logger.error("refresh_token_store_failed", user_id=user.id, error=str(exc))
            raise ServerError("unable to issue session") from exc

    async def refresh(self, refresh_token: str) -> TokenPair:
        if self.rotate_refresh_tokens:
            identity = await self.refresh_store.consume(refresh_token)
        else:
            identity = await self.refresh_store.resolve(refresh_token)
        user = self.store.get_user(identity.user_id)
        if user is None:
            raise RefreshTokenNotFoundError("refresh token not found")
        if not user.is_active:
            await self._revoke_quietly(refresh_token)
            raise AccountDeactivatedError()
        pair = await self.issue_pair_for(user)
        self.logger.info(
            "token_refreshed", user_id=user.id, rotated=self.rotate_refresh_tokens
        )
        return pair

    async def _revoke_quietly(self, refresh_token: str) -> None:
        try:
            await self.refresh_store.revoke(refresh_token)
        except StorageUnavailable as exc:
            self.logger.warning("refresh_token_revoke_failed", error=str(exc))

    async def logout(self, refresh_token: str) -> None:
        try:
            await self.refresh_store.revoke(refresh_token)
        except StorageUnavailable as exc:
            self.logger.error("logout_revoke_failed", error=str(exc))
            raise ServerError("unable to revoke session") from exc

    def authenticate(self, access_token: str) -> Claims:
        """Verify an access token; MFA temp tokens are refused."""
        claims = self.codec.verify(access_token)
        if claims.token_type != TOKEN_TYPE_ACCESS:
            raise MFARequiredError("mfa verification required")
        return claims

    def validate(self, access_token: str) -> Claims:
        return self.authenticate(access_token)

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        user = self.get_profile(user_id)
        await self.verify_user_password(user, current_password)
        new_hash = await asyncio.to_thread(self.passwords.hash, new_password)
        self.store.save_password(user.id, new_hash, PASSWORD_ALGO)
        revoked = await self._revoke_all_quietly(user.id)
        self.logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)

    async def deactivate(self, user_id: str) -> User:
        user = self.get_profile(user_id)
        user.is_active = False
        self.store.save_user(user)
        revoked = await self._revoke_all_quietly(user.id)
        self.logger.info("user_deactivated", user_id=user.id, sessions_revoked=revoked)
        return user

    async def _revoke_all_quietly(self, user_id: str) -> int:
        # Best effort: outstanding access tokens still expire on their own
        try:
            return await self.refresh_store.revoke_all(user_id)
        except StorageUnavailable as exc:
            self.logger.warning("refresh_tokens_revoke_all_failed", user_id=user_id, error=str(exc))
            return 0
