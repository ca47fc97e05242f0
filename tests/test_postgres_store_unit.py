import uuid
from datetime import datetime

import pytest
from psycopg import errors

from portfolio_auth.storage.errors import ConstraintViolation
from portfolio_auth.storage.models import User, UserMFAConfig
from portfolio_auth.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows=None, rowcount=1):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        result = self.pool.results.pop(0) if self.pool.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class ScriptedPool:
    """Hands out connections that replay queued results in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.statements = []

    def connection(self):
        return FakeConnection(self)


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unused"
    return store


def test_construction_without_pool_access_is_guarded():
    store = _store(DummyPool())
    with pytest.raises(AssertionError):
        store.get_user("x")


def test_row_to_user_maps_columns():
    user_id = uuid.uuid4()
    now = datetime(2024, 5, 1, 12, 0, 0)
    user = PostgresStore._row_to_user(
        {
            "id": user_id,
            "email": "a@example.com",
            "username": "alice",
            "role": "admin",
            "is_active": True,
            "is_verified": True,
            "full_name": None,
            "avatar_url": None,
            "oauth_provider": "github",
            "oauth_provider_id": "42",
            "created_at": now,
            "updated_at": now,
            "last_login": None,
        }
    )
    assert user.id == str(user_id)
    assert user.role == "admin"
    assert user.oauth_provider == "github"
    assert user.created_at == now


def test_row_to_mfa_accepts_json_text():
    cfg = PostgresStore._row_to_mfa(
        {"user_id": "u", "secret": "enc", "enabled": True, "backup_codes": '["a", "b"]', "recovery_used": None}
    )
    assert cfg.backup_codes == ["a", "b"]
    assert cfg.recovery_used == 0


def test_get_user_by_email_is_case_insensitive_query():
    pool = ScriptedPool(FakeCursor(rows=[]))
    store = _store(pool)

    assert store.get_user_by_email("A@Example.com") is None

    sql, params = pool.statements[0]
    assert "lower(email) = lower(%s)" in sql
    assert params == ("A@Example.com",)


def test_create_user_maps_unique_violation():
    pool = ScriptedPool(errors.UniqueViolation("duplicate key value violates users_username_key"))
    store = _store(pool)
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user(User.new("a@example.com", "alice"))
    assert exc_info.value.detail == {"field": "username"}


def test_save_missing_user_raises():
    store = _store(ScriptedPool(FakeCursor(rowcount=0)))
    with pytest.raises(ConstraintViolation):
        store.save_user(User.new("a@example.com", "alice"))


def test_consume_backup_code_uses_guarded_update():
    pool = ScriptedPool(FakeCursor(rowcount=1), FakeCursor(rowcount=0))
    store = _store(pool)

    assert store.consume_backup_code("u", 2) is True
    assert store.consume_backup_code("u", 2) is False
    assert store.consume_backup_code("u", -1) is False

    sql, params = pool.statements[0]
    assert sql.startswith("UPDATE user_mfa")
    assert "backup_codes->>%s <> %s" in sql
    assert params == (2, "used", "u", 2, 2, "used")
    assert len(pool.statements) == 2


def test_save_mfa_config_serializes_codes():
    pool = ScriptedPool()
    store = _store(pool)
    store.save_mfa_config(UserMFAConfig(user_id="u", secret="enc", backup_codes=["h1", "h2"]))
    _, params = pool.statements[0]
    assert params[3] == '["h1", "h2"]'


def test_count_admins():
    store = _store(ScriptedPool(FakeCursor(rows=[{"total": 3}])))
    assert store.count_admins() == 3


def test_verify_connection_runs_probe():
    pool = ScriptedPool(FakeCursor(rows=[{"?column?": 1}]))
    store = _store(pool)
    store.verify_connection()
    assert pool.statements[0][0] == "SELECT 1"
