from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthMethod(str, Enum):
    CREDENTIALS = "CREDENTIALS"
    GOOGLE = "GOOGLE"
    YANDEX = "YANDEX"


class UserRole(str, Enum):
    REGULAR = "REGULAR"
    ADMIN = "ADMIN"


class TokenPurpose(str, Enum):
    VERIFICATION = "VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"
    TWO_FACTOR = "TWO_FACTOR"


@dataclass
class User:
    id: str
    email: str
    display_name: str
    password_hash: Optional[str] = None
    picture: Optional[str] = None
    auth_method: AuthMethod = AuthMethod.CREDENTIALS
    role: UserRole = UserRole.REGULAR
    is_verified: bool = False
    is_two_factor_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass
class LinkedAccount:
    id: str
    user_id: str
    provider: str
    external_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class EphemeralToken:
    id: str
    email: str
    token: str
    purpose: TokenPurpose
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls, user_id: str, ttl_minutes: int, *, session_id: Optional[str] = None
    ) -> "Session":
        now = utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )
