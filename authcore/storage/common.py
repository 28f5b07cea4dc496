"""Common storage utilities shared between memory and postgres implementations.

Both backends expose the same atomic primitives so the services never fall
back to load-mutate-save on shared per-user fields.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import PLANS, ROLES, User


# ============================================================================
# STORE CONTRACT
# ============================================================================


class AuthStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_login(self, identifier: str) -> Optional[User]: ...

    def get_user_by_provider(self, provider: str, external_id: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def record_failed_login(
        self, user_id: str, *, now: datetime, max_attempts: int, lockout: timedelta
    ) -> User: ...

    def reset_failed_logins(
        self,
        user_id: str,
        *,
        now: Optional[datetime] = None,
        last_login: Optional[datetime] = None,
    ) -> Optional[User]: ...

    def bump_token_epoch(self, user_id: str) -> User: ...

    def advance_token_epoch(self, user_id: str, expected_epoch: int) -> Optional[User]: ...

    def rehash_password(
        self, user_id: str, current_hash: str, new_hash: str
    ) -> Optional[User]: ...

    def set_password(self, user_id: str, password_hash: str) -> User: ...

    def set_ephemeral_token(
        self, user_id: str, kind: str, token: str, expires_at: datetime
    ) -> User: ...

    def consume_ephemeral_token(
        self,
        kind: str,
        token: str,
        *,
        now: datetime,
        password_hash: Optional[str] = None,
    ) -> Optional[User]: ...

    def link_oauth_identity(self, user_id: str, provider: str, external_id: str) -> User: ...

    def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User: ...

    def update_user_role(self, user_id: str, role: str) -> User: ...

    def update_user_plan(self, user_id: str, plan: str) -> User: ...

    def deactivate_user(self, user_id: str, *, tombstone: str) -> User: ...


# ============================================================================
# SHARED HELPERS
# ============================================================================


def tombstone_prefix(now: Optional[datetime] = None) -> str:
    """Prefix applied to email/username of soft-deleted accounts."""
    stamp = int((now or datetime.now(timezone.utc)).timestamp() * 1000)
    return f"deleted_{stamp}_"


def require_role(role: str) -> str:
    if role not in ROLES:
        raise ConstraintViolation("unknown role", {"field": "role", "value": role})
    return role


def require_plan(plan: str) -> str:
    if plan not in PLANS:
        raise ConstraintViolation("unknown plan", {"field": "plan", "value": plan})
    return plan


def lock_expired(user: User, now: datetime) -> bool:
    return user.locked_until is not None and user.locked_until <= now


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
