from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

ROLES = frozenset({"user", "premium", "admin", "moderator"})
PLANS = frozenset({"free", "premium", "enterprise"})
OAUTH_PROVIDERS = frozenset({"google", "github", "linkedin"})

EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET = "password_reset"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_username(username: str) -> str:
    return (username or "").strip().lower()


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: Optional[str] = None
    role: str = "user"
    plan: str = "free"
    token_epoch: int = 0
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    oauth_provider: Optional[str] = None
    oauth_identifier: Optional[str] = None
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    is_verified: bool = False
    is_active: bool = True
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def summary(self) -> dict:
        """Public projection without credentials, counters or ephemeral tokens."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "plan": self.plan,
            "is_verified": self.is_verified,
            "oauth_provider": self.oauth_provider,
            "last_login": self.last_login.isoformat() if self.last_login else None,
            "created_at": self.created_at.isoformat(),
        }


def ephemeral_fields(kind: str) -> tuple[str, str]:
    """Return the (token, expiry) attribute names used for an ephemeral token kind."""
    if kind == EMAIL_VERIFICATION:
        return "email_verification_token", "email_verification_expires"
    if kind == PASSWORD_RESET:
        return "password_reset_token", "password_reset_expires"
    raise ValueError(f"unknown ephemeral token kind: {kind}")
