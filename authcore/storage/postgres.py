from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.common import require_plan, require_role
from authcore.storage.errors import ConstraintViolation, RecordNotFound
from authcore.storage.models import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    User,
    ephemeral_fields,
    normalize_email,
    normalize_username,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS auth_user (
    id UUID PRIMARY KEY,
    username TEXT NOT NULL,
    email TEXT NOT NULL,
    password_hash TEXT,
    role TEXT NOT NULL DEFAULT 'user',
    plan TEXT NOT NULL DEFAULT 'free',
    token_epoch INTEGER NOT NULL DEFAULT 0 CHECK (token_epoch >= 0),
    failed_login_count INTEGER NOT NULL DEFAULT 0 CHECK (failed_login_count >= 0),
    locked_until TIMESTAMPTZ,
    oauth_provider TEXT,
    oauth_identifier TEXT,
    email_verification_token TEXT,
    email_verification_expires TIMESTAMPTZ,
    password_reset_token TEXT,
    password_reset_expires TIMESTAMPTZ,
    is_verified BOOLEAN NOT NULL DEFAULT false,
    is_active BOOLEAN NOT NULL DEFAULT true,
    last_login TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT auth_user_username_key UNIQUE (username),
    CONSTRAINT auth_user_email_key UNIQUE (email),
    CONSTRAINT auth_user_oauth_key UNIQUE (oauth_provider, oauth_identifier)
);
CREATE INDEX IF NOT EXISTS auth_user_verification_token_idx
    ON auth_user (email_verification_token) WHERE email_verification_token IS NOT NULL;
CREATE INDEX IF NOT EXISTS auth_user_reset_token_idx
    ON auth_user (password_reset_token) WHERE password_reset_token IS NOT NULL;
"""

# The CASE expressions read the pre-update row, so the new count and the lock
# decision are computed from the same snapshot under the row lock.
_RECORD_FAILED_LOGIN = """
UPDATE auth_user
SET failed_login_count = CASE
        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
        ELSE failed_login_count + 1
    END,
    locked_until = CASE
        WHEN locked_until IS NOT NULL AND locked_until > %(now)s THEN locked_until
        WHEN (CASE
                WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                ELSE failed_login_count + 1
              END) >= %(max_attempts)s THEN %(locked_until)s
        ELSE NULL
    END,
    updated_at = now()
WHERE id = %(id)s
RETURNING *
"""


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _constraint_field(exc: errors.UniqueViolation) -> str:
    name = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    if "email" in name:
        return "email"
    if "username" in name:
        return "username"
    if "oauth" in name:
        return "oauth_identifier"
    return "unknown"


class PostgresStore:
    """Postgres-backed user store; every mutation is one ``UPDATE ... RETURNING``."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row.get("password_hash"),
            role=row.get("role", "user"),
            plan=row.get("plan", "free"),
            token_epoch=int(row.get("token_epoch", 0)),
            failed_login_count=int(row.get("failed_login_count", 0)),
            locked_until=row.get("locked_until"),
            oauth_provider=row.get("oauth_provider"),
            oauth_identifier=row.get("oauth_identifier"),
            email_verification_token=row.get("email_verification_token"),
            email_verification_expires=row.get("email_verification_expires"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=row.get("password_reset_expires"),
            is_verified=bool(row.get("is_verified", False)),
            is_active=bool(row.get("is_active", True)),
            last_login=row.get("last_login"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch_one(self, query: Any, params: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_user(row) if row else None

    def _update_one(self, user_id: str, query: Any, params: Any) -> User:
        if not _is_uuid(user_id):
            raise RecordNotFound(user_id)
        try:
            user = self._fetch_one(query, params)
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        if user is None:
            raise RecordNotFound(user_id)
        return user

    # users
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: Optional[str] = None,
        *,
        role: str = "user",
        plan: str = "free",
        oauth_provider: Optional[str] = None,
        oauth_identifier: Optional[str] = None,
        is_verified: bool = False,
    ) -> User:
        require_role(role)
        require_plan(plan)
        try:
            user = self._fetch_one(
                """
                INSERT INTO auth_user (
                    id, username, email, password_hash, role, plan,
                    oauth_provider, oauth_identifier, is_verified
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    normalize_username(username),
                    normalize_email(email),
                    password_hash,
                    role,
                    plan,
                    oauth_provider,
                    oauth_identifier,
                    is_verified,
                ),
            )
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        if user is None:
            raise RuntimeError("insert into auth_user returned no row")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        return self._fetch_one("SELECT * FROM auth_user WHERE id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one(
            "SELECT * FROM auth_user WHERE email = %s", (normalize_email(email),)
        )

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_one(
            "SELECT * FROM auth_user WHERE username = %s", (normalize_username(username),)
        )

    def get_user_by_login(self, identifier: str) -> Optional[User]:
        needle = (identifier or "").strip().lower()
        if not needle:
            return None
        # usernames never contain "@", so the identifier names exactly one column
        column = "email" if "@" in needle else "username"
        query = sql.SQL("SELECT * FROM auth_user WHERE is_active AND {} = %s").format(
            sql.Identifier(column)
        )
        return self._fetch_one(query, (needle,))

    def get_user_by_provider(self, provider: str, external_id: str) -> Optional[User]:
        return self._fetch_one(
            "SELECT * FROM auth_user WHERE oauth_provider = %s AND oauth_identifier = %s",
            (provider, external_id),
        )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    # lockout counters
    def record_failed_login(
        self, user_id: str, *, now: datetime, max_attempts: int, lockout: timedelta
    ) -> User:
        return self._update_one(
            user_id,
            _RECORD_FAILED_LOGIN,
            {
                "id": user_id,
                "now": now,
                "max_attempts": max_attempts,
                "locked_until": now + lockout,
            },
        )

    def reset_failed_logins(
        self,
        user_id: str,
        *,
        now: Optional[datetime] = None,
        last_login: Optional[datetime] = None,
    ) -> Optional[User]:
        """Clear the counter and lock; with ``now`` an active lock is left intact.

        Returns ``None`` when the row was still locked at ``now``.
        """
        if not _is_uuid(user_id):
            raise RecordNotFound(user_id)
        user = self._fetch_one(
            """
            UPDATE auth_user
            SET failed_login_count = 0,
                locked_until = NULL,
                last_login = COALESCE(%(last_login)s, last_login),
                updated_at = now()
            WHERE id = %(id)s
              AND (%(now)s::timestamptz IS NULL
                   OR locked_until IS NULL
                   OR locked_until <= %(now)s)
            RETURNING *
            """,
            {"id": user_id, "now": now, "last_login": last_login},
        )
        if user is None and (now is None or self.get_user(user_id) is None):
            raise RecordNotFound(user_id)
        return user

    # epoch / credentials
    def bump_token_epoch(self, user_id: str) -> User:
        return self._update_one(
            user_id,
            """
            UPDATE auth_user SET token_epoch = token_epoch + 1, updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (user_id,),
        )

    def advance_token_epoch(self, user_id: str, expected_epoch: int) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        return self._fetch_one(
            """
            UPDATE auth_user SET token_epoch = token_epoch + 1, updated_at = now()
            WHERE id = %s AND token_epoch = %s
            RETURNING *
            """,
            (user_id, expected_epoch),
        )

    def rehash_password(
        self, user_id: str, current_hash: str, new_hash: str
    ) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        return self._fetch_one(
            """
            UPDATE auth_user SET password_hash = %s, updated_at = now()
            WHERE id = %s AND password_hash = %s
            RETURNING *
            """,
            (new_hash, user_id, current_hash),
        )

    def set_password(self, user_id: str, password_hash: str) -> User:
        return self._update_one(
            user_id,
            """
            UPDATE auth_user
            SET password_hash = %s, token_epoch = token_epoch + 1, updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (password_hash, user_id),
        )

    # ephemeral tokens
    def set_ephemeral_token(
        self, user_id: str, kind: str, token: str, expires_at: datetime
    ) -> User:
        token_field, expires_field = ephemeral_fields(kind)
        query = sql.SQL(
            "UPDATE auth_user SET {token} = %s, {expires} = %s, updated_at = now() "
            "WHERE id = %s RETURNING *"
        ).format(token=sql.Identifier(token_field), expires=sql.Identifier(expires_field))
        return self._update_one(user_id, query, (token, expires_at, user_id))

    def consume_ephemeral_token(
        self,
        kind: str,
        token: str,
        *,
        now: datetime,
        password_hash: Optional[str] = None,
    ) -> Optional[User]:
        token_field, expires_field = ephemeral_fields(kind)
        if not token:
            return None
        extra = sql.SQL("")
        params: list[Any] = []
        if kind == EMAIL_VERIFICATION:
            extra = sql.SQL(", is_verified = true")
        elif kind == PASSWORD_RESET:
            if password_hash:
                extra = sql.SQL(", password_hash = %s, token_epoch = token_epoch + 1")
                params.append(password_hash)
            else:
                extra = sql.SQL(", token_epoch = token_epoch + 1")
        query = sql.SQL(
            "UPDATE auth_user SET {token} = NULL, {expires} = NULL{extra}, updated_at = now() "
            "WHERE is_active AND {token} = %s AND {expires} > %s RETURNING *"
        ).format(
            token=sql.Identifier(token_field),
            expires=sql.Identifier(expires_field),
            extra=extra,
        )
        params.extend([token, now])
        return self._fetch_one(query, params)

    # oauth / profile
    def link_oauth_identity(self, user_id: str, provider: str, external_id: str) -> User:
        return self._update_one(
            user_id,
            """
            UPDATE auth_user
            SET oauth_provider = %s, oauth_identifier = %s, is_verified = true,
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (provider, external_id, user_id),
        )

    def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        new_email = normalize_email(email) if email is not None else None
        return self._update_one(
            user_id,
            """
            UPDATE auth_user
            SET username = COALESCE(%s, username),
                is_verified = CASE
                    WHEN %s::text IS NOT NULL AND %s::text <> email THEN false
                    ELSE is_verified
                END,
                email = COALESCE(%s, email),
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (
                normalize_username(username) if username is not None else None,
                new_email,
                new_email,
                new_email,
                user_id,
            ),
        )

    def update_user_role(self, user_id: str, role: str) -> User:
        require_role(role)
        return self._update_one(
            user_id,
            """
            UPDATE auth_user SET role = %s, token_epoch = token_epoch + 1, updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (role, user_id),
        )

    def update_user_plan(self, user_id: str, plan: str) -> User:
        require_plan(plan)
        return self._update_one(
            user_id,
            """
            UPDATE auth_user SET plan = %s, token_epoch = token_epoch + 1, updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (plan, user_id),
        )

    def deactivate_user(self, user_id: str, *, tombstone: str) -> User:
        return self._update_one(
            user_id,
            """
            UPDATE auth_user
            SET is_active = false,
                email = %s || email,
                username = %s || username,
                token_epoch = token_epoch + 1,
                email_verification_token = NULL,
                email_verification_expires = NULL,
                password_reset_token = NULL,
                password_reset_expires = NULL,
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (tombstone, tombstone, user_id),
        )
