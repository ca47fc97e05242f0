from __future__ import annotations

import json
from typing import Any, Optional, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from portfolio_auth.storage.errors import StorageUnavailable


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def _loads(raw: Optional[str]) -> Optional[Any]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        # Corrupted entries behave like misses
        return None


class RedisCache:
    """Thin Redis wrapper for refresh tokens, OAuth state and setup tokens.

    Values are stored as JSON documents. Any Redis failure is re-raised as
    ``StorageUnavailable`` so callers can map it to a generic rejection.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self.client.set(key, _dumps(value), ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc
        return _loads(raw)

    async def pop_json(self, key: str) -> Optional[Any]:
        """Atomically get and delete ``key`` so a value is consumed at most once."""
        try:
            raw = await self.client.getdel(key)
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc
        return _loads(raw)

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None:
        try:
            pipe = self.client.pipeline()
            pipe.sadd(key, member)
            pipe.expire(key, max(1, int(ttl_seconds)))
            await pipe.execute()
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def members(self, key: str) -> Set[str]:
        try:
            return set(await self.client.smembers(key))
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def remove_member(self, key: str, member: str) -> None:
        try:
            await self.client.srem(key, member)
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            self._sync_client.set(key, _dumps(value), ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = self._sync_client.get(key)
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc
        return _loads(raw)

    async def pop_json(self, key: str) -> Optional[Any]:
        try:
            raw = self._sync_client.getdel(key)
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc
        return _loads(raw)

    async def delete(self, key: str) -> None:
        try:
            self._sync_client.delete(key)
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None:
        try:
            pipe = self._sync_client.pipeline()
            pipe.sadd(key, member)
            pipe.expire(key, max(1, int(ttl_seconds)))
            pipe.execute()
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def members(self, key: str) -> Set[str]:
        try:
            return set(self._sync_client.smembers(key))
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def remove_member(self, key: str, member: str) -> None:
        try:
            self._sync_client.srem(key, member)
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
