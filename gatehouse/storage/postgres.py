from __future__ import annotations

import contextlib
import uuid
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation, PersistenceError
from gatehouse.storage.models import (
    AuthMethod,
    EphemeralToken,
    LinkedAccount,
    TokenPurpose,
    User,
    UserRole,
    utcnow,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        password_hash TEXT,
        picture TEXT,
        auth_method TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'REGULAR',
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS linked_account (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        external_id TEXT NOT NULL,
        access_token TEXT,
        refresh_token TEXT,
        expires_at BIGINT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, external_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ephemeral_token (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        token TEXT NOT NULL,
        purpose TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ephemeral_token_email_purpose_idx
        ON ephemeral_token (email, purpose)
    """,
    """
    CREATE INDEX IF NOT EXISTS ephemeral_token_token_idx
        ON ephemeral_token (token, purpose)
    """,
)

_USER_COLUMNS = {
    "email",
    "display_name",
    "password_hash",
    "picture",
    "role",
    "is_verified",
    "is_two_factor_enabled",
}


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class PostgresStore:
    """Postgres-backed credential store and token repository."""

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise PersistenceError("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # users
    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            display_name=row["display_name"],
            password_hash=row.get("password_hash"),
            picture=row.get("picture"),
            auth_method=AuthMethod(row["auth_method"]),
            role=UserRole(row.get("role") or UserRole.REGULAR.value),
            is_verified=bool(row.get("is_verified")),
            is_two_factor_enabled=bool(row.get("is_two_factor_enabled")),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def find_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (_normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

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
        user = User(
            id=str(uuid.uuid4()),
            email=_normalize_email(email),
            display_name=display_name,
            password_hash=password_hash,
            picture=picture,
            auth_method=auth_method,
            role=role,
            is_verified=is_verified,
            is_two_factor_enabled=is_two_factor_enabled,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, display_name, password_hash, picture, auth_method,
                        role, is_verified, is_two_factor_enabled, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.display_name,
                        user.password_hash,
                        user.picture,
                        user.auth_method.value,
                        user.role.value,
                        user.is_verified,
                        user.is_two_factor_enabled,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_COLUMNS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if "email" in fields:
            fields["email"] = _normalize_email(fields["email"])
        if "role" in fields and isinstance(fields["role"], UserRole):
            fields["role"] = fields["role"].value
        # column names come from the allow-list above
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params: List[Any] = list(fields.values())
        set_clause = f"{assignments}, updated_at = %s" if assignments else "updated_at = %s"
        params.extend([utcnow(), user_id])
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {set_clause} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        # linked_account rows go with it through ON DELETE CASCADE
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cursor.rowcount > 0

    # linked accounts
    def _row_to_linked_account(self, row: Dict[str, Any]) -> LinkedAccount:
        return LinkedAccount(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            provider=row["provider"],
            external_id=row["external_id"],
            access_token=row.get("access_token"),
            refresh_token=row.get("refresh_token"),
            expires_at=row.get("expires_at"),
            created_at=row.get("created_at") or utcnow(),
        )

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
        account = LinkedAccount(
            id=str(uuid.uuid4()),
            user_id=user_id,
            provider=provider,
            external_id=external_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO linked_account (
                        id, user_id, provider, external_id, access_token,
                        refresh_token, expires_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.user_id,
                        account.provider,
                        account.external_id,
                        account.access_token,
                        account.refresh_token,
                        account.expires_at,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "linked account already exists",
                {"provider": provider, "field": "external_id"},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return account

    def find_linked_account(
        self, provider: str, external_id: str
    ) -> Optional[LinkedAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM linked_account WHERE provider = %s AND external_id = %s",
                (provider, external_id),
            ).fetchone()
        return self._row_to_linked_account(row) if row else None

    def list_linked_accounts(self, user_id: str) -> List[LinkedAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM linked_account WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_linked_account(row) for row in rows]

    # ephemeral tokens
    def _row_to_token(self, row: Dict[str, Any]) -> EphemeralToken:
        return EphemeralToken(
            id=str(row["id"]),
            email=row["email"],
            token=row["token"],
            purpose=TokenPurpose(row["purpose"]),
            expires_at=row["expires_at"],
        )

    def replace_token(self, token: EphemeralToken) -> EphemeralToken:
        """Upsert on ``(email, purpose)`` so only the newest token survives."""
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO ephemeral_token (id, email, token, purpose, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (email, purpose) DO UPDATE
                    SET id = EXCLUDED.id,
                        token = EXCLUDED.token,
                        expires_at = EXCLUDED.expires_at
                RETURNING *
                """,
                (
                    token.id,
                    token.email,
                    token.token,
                    token.purpose.value,
                    token.expires_at,
                ),
            ).fetchone()
        return self._row_to_token(row)

    def find_token(self, token: str, purpose: TokenPurpose) -> Optional[EphemeralToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ephemeral_token WHERE token = %s AND purpose = %s",
                (token, purpose.value),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def find_token_by_email(
        self, email: str, purpose: TokenPurpose
    ) -> Optional[EphemeralToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ephemeral_token WHERE email = %s AND purpose = %s",
                (_normalize_email(email), purpose.value),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def delete_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM ephemeral_token WHERE id = %s", (token_id,)
            )
            return cursor.rowcount > 0
