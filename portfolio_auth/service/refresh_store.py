from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Protocol, Set

from portfolio_auth.logging import get_logger
from portfolio_auth.service.errors import RefreshTokenNotFoundError
from portfolio_auth.storage.errors import StorageUnavailable

logger = get_logger(__name__)

REFRESH_KEY_PREFIX = "refresh_token:"
USER_INDEX_PREFIX = "refresh_tokens:user:"


class Cache(Protocol):
    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def get_json(self, key: str) -> Any: ...

    async def pop_json(self, key: str) -> Any: ...

    async def delete(self, key: str) -> None: ...

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None: ...

    async def members(self, key: str) -> Set[str]: ...

    async def remove_member(self, key: str, member: str) -> None: ...


@dataclass(frozen=True)
class RefreshIdentity:
    user_id: str
    username: str
    email: str
    role: str


class RefreshTokenStore:
    """Opaque refresh tokens mapped to user identity in the shared cache.

    A per-user index set lets every outstanding token of a user be revoked
    at once (password change, deactivation).
    """

    def __init__(self, cache: Cache) -> None:
        self.cache = cache

    @staticmethod
    def _key(token: str) -> str:
        return f"{REFRESH_KEY_PREFIX}{token}"

    @staticmethod
    def _user_key(user_id: str) -> str:
        return f"{USER_INDEX_PREFIX}{user_id}"

    async def store(self, token: str, identity: RefreshIdentity, ttl_seconds: int) -> None:
        await self.cache.set_json(self._key(token), asdict(identity), ttl_seconds)
        try:
            await self.cache.add_member(self._user_key(identity.user_id), token, ttl_seconds)
        except StorageUnavailable as exc:
            # The token itself is stored; only bulk revocation degrades
            logger.warning(
                "refresh_token_index_failed", user_id=identity.user_id, error=str(exc)
            )

    @staticmethod
    def _to_identity(data: Any) -> RefreshIdentity:
        if not isinstance(data, dict) or not data.get("user_id"):
            raise RefreshTokenNotFoundError("refresh token not found")
        return RefreshIdentity(
            user_id=str(data["user_id"]),
            username=str(data.get("username", "")),
            email=str(data.get("email", "")),
            role=str(data.get("role", "user")),
        )

    async def resolve(self, token: str) -> RefreshIdentity:
        if not token:
            raise RefreshTokenNotFoundError("refresh token not found")
        try:
            data = await self.cache.get_json(self._key(token))
        except StorageUnavailable as exc:
            logger.warning("refresh_token_resolve_failed", error=str(exc))
            raise RefreshTokenNotFoundError("refresh token not found") from exc
        return self._to_identity(data)

    async def consume(self, token: str) -> RefreshIdentity:
        """Resolve and revoke in one atomic step; a token is consumed at most once."""
        if not token:
            raise RefreshTokenNotFoundError("refresh token not found")
        try:
            data = await self.cache.pop_json(self._key(token))
        except StorageUnavailable as exc:
            logger.warning("refresh_token_consume_failed", error=str(exc))
            raise RefreshTokenNotFoundError("refresh token not found") from exc
        identity = self._to_identity(data)
        try:
            await self.cache.remove_member(self._user_key(identity.user_id), token)
        except StorageUnavailable as exc:
            logger.warning("refresh_token_unindex_failed", error=str(exc))
        return identity

    async def revoke(self, token: str) -> None:
        if not token:
            return
        data = await self.cache.pop_json(self._key(token))
        if isinstance(data, dict) and data.get("user_id"):
            try:
                await self.cache.remove_member(self._user_key(str(data["user_id"])), token)
            except StorageUnavailable as exc:
                logger.warning("refresh_token_unindex_failed", error=str(exc))
        logger.info("refresh_token_revoked")

    async def revoke_all(self, user_id: str) -> int:
        """Revoke every indexed refresh token for ``user_id``; returns the count."""
        tokens = await self.cache.members(self._user_key(user_id))
        for token in tokens:
            await self.cache.delete(self._key(token))
        await self.cache.delete(self._user_key(user_id))
        logger.info("refresh_tokens_revoked_all", user_id=user_id, count=len(tokens))
        return len(tokens)
