"""Unit tests for storage backends.

Tests for:
- MemoryStore user, credential, MFA and OAuth token operations
- MemoryStore JSON state persistence
- MemoryCache expiry
- Redis wrappers mapping client failures to StorageUnavailable
"""

import threading
from datetime import datetime

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from portfolio_auth.storage.errors import ConstraintViolation, StorageUnavailable
from portfolio_auth.storage.memory import MemoryStore
from portfolio_auth.storage.memory_cache import MemoryCache
from portfolio_auth.storage.models import (
    USED_BACKUP_CODE,
    MFAEvent,
    OAuthTokenRecord,
    User,
    UserMFAConfig,
)
from portfolio_auth.storage.redis_cache import RedisCache, SyncRedisCache


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def test_user(memory_store):
    """Create a test user."""
    return memory_store.create_user(User.new("test@example.com", "testuser"))


class TestUsers:
    def test_lookup_is_case_insensitive(self, memory_store, test_user):
        assert memory_store.get_user_by_email("TEST@example.com").id == test_user.id
        assert memory_store.get_user_by_username("TestUser").id == test_user.id
        assert memory_store.get_user("missing") is None

    def test_duplicate_email_and_username(self, memory_store, test_user):
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_user(User.new("Test@Example.com", "other"))
        assert exc_info.value.detail == {"field": "email"}
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_user(User.new("other@example.com", "TESTUSER"))
        assert exc_info.value.detail == {"field": "username"}

    def test_returned_users_are_copies(self, memory_store, test_user):
        fetched = memory_store.get_user(test_user.id)
        fetched.role = "admin"
        assert memory_store.get_user(test_user.id).role == "user"
        assert memory_store.count_admins() == 0

    def test_save_user(self, memory_store, test_user):
        test_user.role = "admin"
        memory_store.save_user(test_user)
        assert memory_store.count_admins() == 1

    def test_save_unknown_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.save_user(User.new("ghost@example.com", "ghost"))


class TestCredentials:
    def test_password_record_update_keeps_created_at(self, memory_store, test_user):
        memory_store.save_password(test_user.id, "hash-1")
        first = memory_store.get_password_record(test_user.id)
        assert first.last_updated_at is None

        memory_store.save_password(test_user.id, "hash-2")
        second = memory_store.get_password_record(test_user.id)
        assert second.password_hash == "hash-2"
        assert second.created_at == first.created_at
        assert second.last_updated_at is not None

    def test_password_for_unknown_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.save_password("missing", "hash")


class TestMFA:
    def _config(self, user_id):
        return UserMFAConfig(
            user_id=user_id, secret="enc", enabled=True, backup_codes=["h0", "h1", "h2"]
        )

    def test_consume_backup_code_once(self, memory_store, test_user):
        memory_store.save_mfa_config(self._config(test_user.id))

        assert memory_store.consume_backup_code(test_user.id, 1) is True
        assert memory_store.consume_backup_code(test_user.id, 1) is False

        cfg = memory_store.get_mfa_config(test_user.id)
        assert cfg.backup_codes == ["h0", USED_BACKUP_CODE, "h2"]
        assert cfg.recovery_used == 1
        assert cfg.remaining_backup_codes == 2

    @pytest.mark.parametrize("index", [-1, 3])
    def test_consume_out_of_range(self, memory_store, test_user, index):
        memory_store.save_mfa_config(self._config(test_user.id))
        assert memory_store.consume_backup_code(test_user.id, index) is False

    def test_concurrent_consumers_win_once(self, memory_store, test_user):
        memory_store.save_mfa_config(self._config(test_user.id))
        results = []

        def consume():
            results.append(memory_store.consume_backup_code(test_user.id, 0))

        threads = [threading.Thread(target=consume) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1

    def test_events_newest_first(self, memory_store, test_user):
        older = MFAEvent(user_id=test_user.id, event_type="failed", success=False)
        older.created_at = datetime(2024, 1, 1)
        memory_store.record_mfa_event(MFAEvent(user_id=test_user.id, event_type="verified", success=True))
        memory_store.record_mfa_event(older)
        events = memory_store.list_mfa_events(test_user.id, limit=1)
        assert [e.event_type for e in events] == ["verified"]

    def test_delete_config(self, memory_store, test_user):
        memory_store.save_mfa_config(self._config(test_user.id))
        memory_store.delete_mfa_config(test_user.id)
        assert memory_store.get_mfa_config(test_user.id) is None


class TestOAuthTokens:
    def test_upsert_replaces(self, memory_store, test_user):
        memory_store.upsert_oauth_token(OAuthTokenRecord(test_user.id, "google", "enc-1"))
        memory_store.upsert_oauth_token(OAuthTokenRecord(test_user.id, "google", "enc-2", "r"))
        record = memory_store.get_oauth_token(test_user.id, "google")
        assert record.access_token == "enc-2"
        assert record.refresh_token == "r"
        assert memory_store.get_oauth_token(test_user.id, "github") is None

    def test_unknown_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.upsert_oauth_token(OAuthTokenRecord("missing", "google", "enc"))


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        path = tmp_path / "state.json"
        store = MemoryStore(state_path=str(path))
        user = store.create_user(User.new("persist@example.com", "persist"))
        store.save_password(user.id, "hash")
        store.save_mfa_config(UserMFAConfig(user_id=user.id, secret="enc", backup_codes=["h"]))
        store.upsert_oauth_token(OAuthTokenRecord(user.id, "github", "enc"))

        reloaded = MemoryStore(state_path=str(path))

        loaded = reloaded.get_user_by_email("persist@example.com")
        assert loaded.id == user.id
        assert loaded.created_at == user.created_at
        assert reloaded.get_password_record(user.id).password_hash == "hash"
        assert reloaded.get_mfa_config(user.id).backup_codes == ["h"]
        assert reloaded.get_oauth_token(user.id, "github").access_token == "enc"

    def test_missing_file_starts_empty(self, tmp_path):
        store = MemoryStore(state_path=str(tmp_path / "absent.json"))
        assert store.users == {}


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestMemoryCache:
    async def test_values_expire(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.set_json("k", {"a": 1}, 10)
        assert await cache.get_json("k") == {"a": 1}
        clock.now += 10
        assert await cache.get_json("k") is None

    async def test_pop_is_single_use(self):
        cache = MemoryCache()
        await cache.set_json("k", "v", 60)
        assert await cache.pop_json("k") == "v"
        assert await cache.pop_json("k") is None

    async def test_stored_values_are_copies(self):
        cache = MemoryCache()
        value = {"items": [1]}
        await cache.set_json("k", value, 60)
        value["items"].append(2)
        assert await cache.get_json("k") == {"items": [1]}

    async def test_sets(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.add_member("s", "a", 10)
        await cache.add_member("s", "b", 10)
        await cache.remove_member("s", "a")
        assert await cache.members("s") == {"b"}
        clock.now += 11
        assert await cache.members("s") == set()

    async def test_writes_purge_unread_expired_entries(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock, sweep_interval_seconds=60)
        await cache.set_json("oauth:state:abandoned", {"provider": "google"}, 30)
        await cache.add_member("refresh_tokens:u", "t", 30)

        clock.now += 31
        await cache.set_json("early", 1, 300)
        # Interval not yet elapsed
        assert "oauth:state:abandoned" in cache._values

        clock.now += 30
        await cache.set_json("later", 2, 300)
        assert "oauth:state:abandoned" not in cache._values
        assert "refresh_tokens:u" not in cache._sets
        assert set(cache._values) == {"early", "later"}

    async def test_sweep(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.set_json("a", 1, 10)
        await cache.set_json("b", 2, 100)
        await cache.add_member("s", "m", 10)
        clock.now += 10
        assert cache.sweep() == 2
        assert await cache.get_json("b") == 2
        assert cache.sweep() == 0


class FailingSyncClient:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        return fail


class FailingAsyncClient:
    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        return fail


class RecordingSyncClient:
    def __init__(self):
        self.values = {}

    def set(self, key, value, ex=None):
        self.values[key] = (value, ex)

    def get(self, key):
        entry = self.values.get(key)
        return entry[0] if entry else None

    def getdel(self, key):
        entry = self.values.pop(key, None)
        return entry[0] if entry else None


class TestRedisWrappers:
    async def test_sync_cache_maps_errors(self):
        cache = SyncRedisCache.__new__(SyncRedisCache)
        cache._sync_client = FailingSyncClient()
        with pytest.raises(StorageUnavailable):
            await cache.get_json("k")
        with pytest.raises(StorageUnavailable):
            await cache.set_json("k", 1, 10)
        with pytest.raises(StorageUnavailable):
            await cache.members("s")

    async def test_async_cache_maps_errors(self):
        cache = RedisCache.__new__(RedisCache)
        cache.client = FailingAsyncClient()
        with pytest.raises(StorageUnavailable):
            await cache.pop_json("k")
        with pytest.raises(StorageUnavailable):
            await cache.delete("k")

    async def test_json_round_trip_and_corruption(self):
        cache = SyncRedisCache.__new__(SyncRedisCache)
        cache._sync_client = RecordingSyncClient()
        await cache.set_json("k", {"user_id": "u"}, 0)
        assert cache._sync_client.values["k"] == ('{"user_id":"u"}', 1)
        assert await cache.pop_json("k") == {"user_id": "u"}
        assert await cache.pop_json("k") is None

        cache._sync_client.values["bad"] = ("{not json", 10)
        assert await cache.get_json("bad") is None
