from __future__ import annotations

import json
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from portfolio_auth.logging import get_logger
from portfolio_auth.storage.errors import ConstraintViolation
from portfolio_auth.storage.models import (
    USED_BACKUP_CODE,
    MFAEvent,
    OAuthTokenRecord,
    User,
    UserAuthCredential,
    UserMFAConfig,
    utcnow,
)

_USER_DATETIME_FIELDS = ("created_at", "updated_at", "last_login")


class MemoryStore:
    """In-process user repository for tests and local development.

    When ``state_path`` is given the full state is written to a JSON file after
    each mutation and reloaded on construction.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserAuthCredential] = {}
        self.mfa_configs: Dict[str, UserMFAConfig] = {}
        self.mfa_events: List[MFAEvent] = []
        self.oauth_tokens: Dict[tuple[str, str], OAuthTokenRecord] = {}
        # RLock so nested helpers can re-acquire within the same thread
        self._data_lock = threading.RLock()
        self._state_path = Path(state_path) if state_path else None
        if self._state_path:
            self._load_state()

    # users
    def create_user(self, user: User) -> User:
        with self._data_lock:
            email = user.email.lower()
            username = user.username.lower()
            for existing in self.users.values():
                if existing.email.lower() == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username.lower() == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    def save_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user.id})
            user.updated_at = utcnow()
            self.users[user.id] = replace(user)
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = email.lower()
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email.lower() == needle), None
            )
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        needle = username.lower()
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.username.lower() == needle), None
            )
            return replace(user) if user else None

    def count_admins(self) -> int:
        with self._data_lock:
            return sum(1 for u in self.users.values() if u.role == "admin")

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            previous = self.credentials.get(user_id)
            self.credentials[user_id] = UserAuthCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=previous.created_at if previous else utcnow(),
                last_updated_at=utcnow() if previous else None,
            )
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[UserAuthCredential]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            return replace(record) if record else None

    # mfa
    def save_mfa_config(self, config: UserMFAConfig) -> UserMFAConfig:
        with self._data_lock:
            if config.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for mfa", {"user_id": config.user_id}
                )
            config.updated_at = utcnow()
            self.mfa_configs[config.user_id] = replace(
                config, backup_codes=list(config.backup_codes)
            )
            self._persist_state()
            return config

    def get_mfa_config(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._data_lock:
            cfg = self.mfa_configs.get(user_id)
            if not cfg:
                return None
            return replace(cfg, backup_codes=list(cfg.backup_codes))

    def delete_mfa_config(self, user_id: str) -> None:
        with self._data_lock:
            if self.mfa_configs.pop(user_id, None) is not None:
                self._persist_state()

    def consume_backup_code(self, user_id: str, index: int) -> bool:
        """Mark backup code ``index`` used; False if it was already consumed."""
        with self._data_lock:
            cfg = self.mfa_configs.get(user_id)
            if not cfg or index < 0 or index >= len(cfg.backup_codes):
                return False
            if cfg.backup_codes[index] == USED_BACKUP_CODE:
                return False
            cfg.backup_codes[index] = USED_BACKUP_CODE
            cfg.recovery_used += 1
            cfg.updated_at = utcnow()
            self._persist_state()
            return True

    def record_mfa_event(self, event: MFAEvent) -> MFAEvent:
        with self._data_lock:
            self.mfa_events.append(event)
            self._persist_state()
            return event

    def list_mfa_events(self, user_id: str, limit: int = 50) -> List[MFAEvent]:
        with self._data_lock:
            events = [e for e in self.mfa_events if e.user_id == user_id]
            return sorted(events, key=lambda e: e.created_at, reverse=True)[:limit]

    # oauth tokens
    def upsert_oauth_token(self, record: OAuthTokenRecord) -> OAuthTokenRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for oauth token", {"user_id": record.user_id}
                )
            key = (record.user_id, record.provider)
            existing = self.oauth_tokens.get(key)
            if existing:
                record.created_at = existing.created_at
            record.updated_at = utcnow()
            self.oauth_tokens[key] = replace(record)
            self._persist_state()
            return record

    def get_oauth_token(self, user_id: str, provider: str) -> Optional[OAuthTokenRecord]:
        with self._data_lock:
            record = self.oauth_tokens.get((user_id, provider))
            return replace(record) if record else None

    # persistence
    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    @staticmethod
    def _decode_datetimes(data: Dict[str, Any], fields: tuple[str, ...]) -> Dict[str, Any]:
        for name in fields:
            if data.get(name):
                data[name] = datetime.fromisoformat(data[name])
        return data

    def _persist_state(self) -> None:
        if not self._state_path:
            return
        state = {
            "users": [asdict(u) for u in self.users.values()],
            "credentials": [asdict(c) for c in self.credentials.values()],
            "mfa_configs": [asdict(c) for c in self.mfa_configs.values()],
            "mfa_events": [asdict(e) for e in self.mfa_events],
            "oauth_tokens": [asdict(t) for t in self.oauth_tokens.values()],
        }
        try:
            self._state_path.parent.mkdir(parents=True, exist_ok=True)
            self._state_path.write_text(json.dumps(state, indent=2, default=self._encode))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        try:
            data = json.loads(self._state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: User(**self._decode_datetimes(u, _USER_DATETIME_FIELDS))
            for u in data.get("users", [])
        }
        self.credentials = {
            c["user_id"]: UserAuthCredential(
                **self._decode_datetimes(c, ("created_at", "last_updated_at"))
            )
            for c in data.get("credentials", [])
        }
        self.mfa_configs = {
            c["user_id"]: UserMFAConfig(
                **self._decode_datetimes(c, ("created_at", "updated_at"))
            )
            for c in data.get("mfa_configs", [])
        }
        self.mfa_events = [
            MFAEvent(**self._decode_datetimes(e, ("created_at",)))
            for e in data.get("mfa_events", [])
        ]
        tokens = [
            OAuthTokenRecord(
                **self._decode_datetimes(t, ("token_expiry", "created_at", "updated_at"))
            )
            for t in data.get("oauth_tokens", [])
        ]
        self.oauth_tokens = {(t.user_id, t.provider): t for t in tokens}
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True
