from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from portfolio_auth.logging import get_logger
from portfolio_auth.storage.errors import ConstraintViolation
from portfolio_auth.storage.models import (
    USED_BACKUP_CODE,
    MFAEvent,
    OAuthTokenRecord,
    User,
    UserAuthCredential,
    UserMFAConfig,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        full_name TEXT,
        avatar_url TEXT,
        oauth_provider TEXT,
        oauth_provider_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS users_email_key ON users (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS users_username_key ON users (lower(username))",
    """
    CREATE TABLE IF NOT EXISTS user_credentials (
        user_id UUID PRIMARY KEY REFERENCES users(id),
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_mfa (
        user_id UUID PRIMARY KEY REFERENCES users(id),
        secret TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        backup_codes JSONB NOT NULL DEFAULT '[]'::jsonb,
        recovery_used INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mfa_events (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id),
        event_type TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_tokens (
        user_id UUID NOT NULL REFERENCES users(id),
        provider TEXT NOT NULL,
        access_token TEXT NOT NULL,
        refresh_token TEXT,
        token_expiry TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, provider)
    )
    """,
)


class PostgresStore:
    """Postgres-backed user repository."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            is_verified=row.get("is_verified", False),
            full_name=row.get("full_name"),
            avatar_url=row.get("avatar_url"),
            oauth_provider=row.get("oauth_provider"),
            oauth_provider_id=row.get("oauth_provider_id"),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
            last_login=row.get("last_login"),
        )

    @staticmethod
    def _row_to_mfa(row: Dict[str, Any]) -> UserMFAConfig:
        codes = row.get("backup_codes") or []
        if isinstance(codes, str):
            codes = json.loads(codes)
        return UserMFAConfig(
            user_id=str(row["user_id"]),
            secret=row["secret"],
            enabled=bool(row.get("enabled", False)),
            backup_codes=list(codes),
            recovery_used=int(row.get("recovery_used") or 0),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
        )

    # users
    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO users (id, email, username, role, is_active, is_verified,
                        full_name, avatar_url, oauth_provider, oauth_provider_id, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.username,
                        user.role,
                        user.is_active,
                        user.is_verified,
                        user.full_name,
                        user.avatar_url,
                        user.oauth_provider,
                        user.oauth_provider_id,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return user

    def save_user(self, user: User) -> User:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE users SET email = %s, username = %s, role = %s, is_active = %s,
                    is_verified = %s, full_name = %s, avatar_url = %s, oauth_provider = %s,
                    oauth_provider_id = %s, last_login = %s, updated_at = now()
                WHERE id = %s
                """,
                (
                    user.email,
                    user.username,
                    user.role,
                    user.is_active,
                    user.is_verified,
                    user.full_name,
                    user.avatar_url,
                    user.oauth_provider,
                    user.oauth_provider_id,
                    user.last_login,
                    user.id,
                ),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user does not exist", {"user_id": user.id})
        return user

    def _get_user_where(self, clause: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM users WHERE {clause}", (value,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._get_user_where("id = %s", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user_where("lower(email) = lower(%s)", email)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._get_user_where("lower(username) = lower(%s)", username)

    def count_admins(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM users WHERE role = 'admin'"
            ).fetchone()
        return int(row["total"]) if row else 0

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credentials (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[UserAuthCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_credentials WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return UserAuthCredential(
            user_id=str(row["user_id"]),
            password_hash=str(row["password_hash"]),
            password_algo=str(row["password_algo"]),
            created_at=row.get("created_at") or datetime.utcnow(),
            last_updated_at=row.get("last_updated_at"),
        )

    # mfa
    def save_mfa_config(self, config: UserMFAConfig) -> UserMFAConfig:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_mfa (user_id, secret, enabled, backup_codes, recovery_used)
                VALUES (%s, %s, %s, %s::jsonb, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET secret = EXCLUDED.secret,
                    enabled = EXCLUDED.enabled,
                    backup_codes = EXCLUDED.backup_codes,
                    recovery_used = EXCLUDED.recovery_used,
                    updated_at = now()
                """,
                (
                    config.user_id,
                    config.secret,
                    config.enabled,
                    json.dumps(config.backup_codes),
                    config.recovery_used,
                ),
            )
        return config

    def get_mfa_config(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_mfa WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_mfa(row)

    def delete_mfa_config(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM user_mfa WHERE user_id = %s", (user_id,))

    def consume_backup_code(self, user_id: str, index: int) -> bool:
        """Atomically mark a backup code slot used; False if already consumed."""
        if index < 0:
            return False
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_mfa
                SET backup_codes = jsonb_set(backup_codes, ARRAY[%s::text], to_jsonb(%s::text)),
                    recovery_used = recovery_used + 1,
                    updated_at = now()
                WHERE user_id = %s
                  AND jsonb_array_length(backup_codes) > %s
                  AND backup_codes->>%s <> %s
                """,
                (index, USED_BACKUP_CODE, user_id, index, index, USED_BACKUP_CODE),
            )
            return cur.rowcount == 1

    def record_mfa_event(self, event: MFAEvent) -> MFAEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO mfa_events (id, user_id, event_type, success, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.user_id,
                    event.event_type,
                    event.success,
                    event.ip_address,
                    event.user_agent,
                    event.created_at,
                ),
            )
        return event

    def list_mfa_events(self, user_id: str, limit: int = 50) -> List[MFAEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM mfa_events WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                (user_id, limit),
            ).fetchall()
        return [
            MFAEvent(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                event_type=row["event_type"],
                success=bool(row["success"]),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                created_at=row.get("created_at") or datetime.utcnow(),
            )
            for row in rows
        ]

    # oauth tokens
    def upsert_oauth_token(self, record: OAuthTokenRecord) -> OAuthTokenRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO oauth_tokens (user_id, provider, access_token, refresh_token, token_expiry)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (user_id, provider) DO UPDATE
                SET access_token = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    token_expiry = EXCLUDED.token_expiry,
                    updated_at = now()
                """,
                (
                    record.user_id,
                    record.provider,
                    record.access_token,
                    record.refresh_token,
                    record.token_expiry,
                ),
            )
        return record

    def get_oauth_token(self, user_id: str, provider: str) -> Optional[OAuthTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_tokens WHERE user_id = %s AND provider = %s",
                (user_id, provider),
            ).fetchone()
        if not row:
            return None
        return OAuthTokenRecord(
            user_id=str(row["user_id"]),
            provider=row["provider"],
            access_token=row["access_token"],
            refresh_token=row.get("refresh_token"),
            token_expiry=row.get("token_expiry"),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
        )
