from __future__ import annotations

import json
import os
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation, PersistenceError
from gatehouse.storage.models import (
    AuthMethod,
    EphemeralToken,
    LinkedAccount,
    Session,
    TokenPurpose,
    User,
    UserRole,
    utcnow,
)

_UPDATABLE_USER_FIELDS = frozenset(
    {
        "email",
        "display_name",
        "password_hash",
        "picture",
        "role",
        "is_verified",
        "is_two_factor_enabled",
    }
)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """In-memory credential and token store.

    When ``fs_root`` is given, every write is snapshotted to
    ``<fs_root>/state/memory_store.json`` and reloaded on start-up.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.linked_accounts: Dict[str, LinkedAccount] = {}
        self.tokens: Dict[str, EphemeralToken] = {}
        # RLock so helpers can nest under a held lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users
    def find_user_by_email(self, email: str) -> Optional[User]:
        normalized = _normalize_email(email)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email == normalized), None
            )
            return replace(user) if user else None

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def create_user(
        self,
        *,
        email: str,
        display_name: str,
        password_hash: Optional[str] = None,
        picture: Optional[str] = None,
        auth_method: AuthMethod = AuthMethod.CREDENTIALS,
        role: UserRole = UserRole.REGULAR,
        is_verified: bool = False,
        is_two_factor_enabled: bool = False,
    ) -> User:
        normalized = _normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                display_name=display_name,
                password_hash=password_hash,
                picture=picture,
                auth_method=auth_method,
                role=role,
                is_verified=is_verified,
                is_two_factor_enabled=is_two_factor_enabled,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields:
                fields["email"] = _normalize_email(fields["email"])
                clash = next(
                    (
                        u
                        for u in self.users.values()
                        if u.email == fields["email"] and u.id != user_id
                    ),
                    None,
                )
                if clash:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        """Remove a user and its linked accounts."""
        with self._data_lock:
            removed = self.users.pop(user_id, None)
            if removed is None:
                return False
            for account_id in [
                a.id for a in self.linked_accounts.values() if a.user_id == user_id
            ]:
                self.linked_accounts.pop(account_id, None)
            self._persist_state()
            return True

    # linked accounts
    def create_linked_account(
        self,
        *,
        user_id: str,
        provider: str,
        external_id: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[int] = None,
    ) -> LinkedAccount:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": user_id}
                )
            for existing in self.linked_accounts.values():
                if existing.provider == provider and existing.external_id == external_id:
                    raise ConstraintViolation(
                        "linked account already exists",
                        {"provider": provider, "field": "external_id"},
                    )
            account = LinkedAccount(
                id=str(uuid.uuid4()),
                user_id=user_id,
                provider=provider,
                external_id=external_id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
            )
            self.linked_accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def find_linked_account(
        self, provider: str, external_id: str
    ) -> Optional[LinkedAccount]:
        with self._data_lock:
            for account in self.linked_accounts.values():
                if account.provider == provider and account.external_id == external_id:
                    return replace(account)
            return None

    def list_linked_accounts(self, user_id: str) -> List[LinkedAccount]:
        with self._data_lock:
            return [
                replace(a) for a in self.linked_accounts.values() if a.user_id == user_id
            ]

    # ephemeral tokens
    def replace_token(self, token: EphemeralToken) -> EphemeralToken:
        """Delete any token for the same (email, purpose) and insert ``token``."""
        with self._data_lock:
            stale = [
                tid
                for tid, existing in self.tokens.items()
                if existing.email == token.email and existing.purpose == token.purpose
            ]
            for tid in stale:
                self.tokens.pop(tid, None)
            self.tokens[token.id] = replace(token)
            self._persist_state()
            return replace(token)

    def find_token(self, token: str, purpose: TokenPurpose) -> Optional[EphemeralToken]:
        with self._data_lock:
            for existing in self.tokens.values():
                if existing.token == token and existing.purpose == purpose:
                    return replace(existing)
            return None

    def find_token_by_email(
        self, email: str, purpose: TokenPurpose
    ) -> Optional[EphemeralToken]:
        normalized = _normalize_email(email)
        with self._data_lock:
            for existing in self.tokens.values():
                if existing.email == normalized and existing.purpose == purpose:
                    return replace(existing)
            return None

    def delete_token(self, token_id: str) -> bool:
        with self._data_lock:
            removed = self.tokens.pop(token_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def list_tokens(
        self, email: Optional[str] = None, purpose: Optional[TokenPurpose] = None
    ) -> List[EphemeralToken]:
        with self._data_lock:
            return [
                replace(t)
                for t in self.tokens.values()
                if (email is None or t.email == email)
                and (purpose is None or t.purpose == purpose)
            ]

    # snapshot
    def _state_path(self) -> Path:
        if not self.fs_root:
            raise PersistenceError("memory store has no fs_root")
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif hasattr(value, "value"):
                data[key] = value.value
        return data

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        payload = {
            "users": [self._serialize(u) for u in self.users.values()],
            "linked_accounts": [
                self._serialize(a) for a in self.linked_accounts.values()
            ],
            "tokens": [self._serialize(t) for t in self.tokens.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(payload))
            os.replace(tmp_path, path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc))
            raise PersistenceError("failed to persist memory store") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            payload = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            self.logger.warning("memory_store_load_failed", error=str(exc))
            return False
        for raw in payload.get("users", []):
            raw["auth_method"] = AuthMethod(raw["auth_method"])
            raw["role"] = UserRole(raw["role"])
            raw["created_at"] = datetime.fromisoformat(raw["created_at"])
            raw["updated_at"] = datetime.fromisoformat(raw["updated_at"])
            user = User(**raw)
            self.users[user.id] = user
        for raw in payload.get("linked_accounts", []):
            raw["created_at"] = datetime.fromisoformat(raw["created_at"])
            account = LinkedAccount(**raw)
            self.linked_accounts[account.id] = account
        for raw in payload.get("tokens", []):
            raw["purpose"] = TokenPurpose(raw["purpose"])
            raw["expires_at"] = datetime.fromisoformat(raw["expires_at"])
            token = EphemeralToken(**raw)
            self.tokens[token.id] = token
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            linked_accounts=len(self.linked_accounts),
            tokens=len(self.tokens),
        )
        return True


class MemorySessionStore:
    """Process-local session backend used in tests and without Redis."""

    def __init__(self) -> None:
        self.sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    async def save_session(self, session: Session) -> None:
        with self._lock:
            self.sessions[session.id] = session

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self.sessions.get(session_id)
            if session and session.expires_at <= utcnow():
                self.sessions.pop(session_id, None)
                return None
            return session

    async def delete_session(self, session_id: str) -> None:
        with self._lock:
            self.sessions.pop(session_id, None)
