from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

# Marker written over a consumed backup code slot
USED_BACKUP_CODE = "used"


def utcnow() -> datetime:
    return datetime.utcnow()


@dataclass
class User:
    id: str
    email: str
    username: str
    role: str = "user"
    is_active: bool = True
    is_verified: bool = False
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    oauth_provider: Optional[str] = None
    oauth_provider_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        username: str,
        *,
        role: str = "user",
        is_verified: bool = False,
        full_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            username=username,
            role=role,
            is_verified=is_verified,
            full_name=full_name,
            avatar_url=avatar_url,
        )

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "role": self.role,
            "is_active": self.is_active,
            "is_verified": self.is_verified,
            "full_name": self.full_name,
            "avatar_url": self.avatar_url,
            "oauth_provider": self.oauth_provider,
            "created_at": self.created_at,
            "last_login": self.last_login,
        }


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class UserMFAConfig:
    """TOTP enrollment for one user.

    ``secret`` is stored encrypted; ``backup_codes`` holds argon2 hashes, and a
    consumed slot is overwritten with ``USED_BACKUP_CODE`` so the remaining
    slots keep their positions.
    """

    user_id: str
    secret: str
    enabled: bool = False
    backup_codes: List[str] = field(default_factory=list)
    recovery_used: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def remaining_backup_codes(self) -> int:
        return sum(1 for code in self.backup_codes if code != USED_BACKUP_CODE)


@dataclass
class MFAEvent:
    user_id: str
    event_type: str
    success: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OAuthTokenRecord:
    user_id: str
    provider: str
    access_token: str
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
