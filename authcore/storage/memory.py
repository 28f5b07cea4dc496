from __future__ import annotations

import json
import threading
import uuid
from dataclasses import fields, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.common import (
    deserialize_datetime,
    lock_expired,
    require_plan,
    require_role,
    serialize_datetime,
)
from authcore.storage.errors import ConstraintViolation, RecordNotFound
from authcore.storage.models import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    User,
    ephemeral_fields,
    normalize_email,
    normalize_username,
    utcnow,
)

_DATETIME_FIELDS = frozenset(
    {
        "locked_until",
        "email_verification_expires",
        "password_reset_expires",
        "last_login",
        "created_at",
        "updated_at",
    }
)


class MemoryStore:
    """In-process user store with per-call atomic updates.

    Every mutation runs inside one critical section on ``_data_lock`` so a
    counter increment or epoch bump can never lose a concurrent update. When
    ``fs_root`` is set the records are snapshotted to JSON after each write
    and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers can be called while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        if self.fs_root is None:
            raise RuntimeError("memory store has no fs_root configured")
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "users.json"

    # lookups
    def _require(self, user_id: str) -> User:
        """Working copy of a stored record; edits become visible via ``_commit``."""
        user = self.users.get(user_id)
        if user is None:
            raise RecordNotFound(user_id)
        return replace(user)

    def _find(self, predicate) -> Optional[User]:
        return next((u for u in self.users.values() if predicate(u)), None)

    def _ensure_unique(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if email is not None and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username is not None and existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})

    def _commit(self, user: User) -> User:
        # the live map only changes once the snapshot holding ``user`` is written
        user.updated_at = utcnow()
        self._persist_state(pending=user)
        self.users[user.id] = user
        return replace(user)

    # user / auth
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
        username = normalize_username(username)
        email = normalize_email(email)
        require_role(role)
        require_plan(plan)
        with self._data_lock:
            self._ensure_unique(username=username, email=email)
            if oauth_provider and oauth_identifier:
                self._ensure_identity_free(oauth_provider, oauth_identifier)
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                role=role,
                plan=plan,
                oauth_provider=oauth_provider,
                oauth_identifier=oauth_identifier,
                is_verified=is_verified,
            )
            return self._commit(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            user = self._find(lambda u: u.email == email)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        username = normalize_username(username)
        with self._data_lock:
            user = self._find(lambda u: u.username == username)
            return replace(user) if user else None

    def get_user_by_login(self, identifier: str) -> Optional[User]:
        needle = (identifier or "").strip().lower()
        if not needle:
            return None
        # usernames never contain "@", so the identifier names exactly one field
        key = "email" if "@" in needle else "username"
        with self._data_lock:
            user = self._find(lambda u: u.is_active and getattr(u, key) == needle)
            return replace(user) if user else None

    def get_user_by_provider(self, provider: str, external_id: str) -> Optional[User]:
        with self._data_lock:
            user = self._find(
                lambda u: u.oauth_provider == provider
                and u.oauth_identifier == external_id
            )
            return replace(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[:limit]]

    # lockout counters
    def record_failed_login(
        self, user_id: str, *, now: datetime, max_attempts: int, lockout: timedelta
    ) -> User:
        with self._data_lock:
            user = self._require(user_id)
            if lock_expired(user, now):
                user.failed_login_count = 0
                user.locked_until = None
            user.failed_login_count += 1
            if user.failed_login_count >= max_attempts and not user.is_locked(now):
                user.locked_until = now + lockout
            return self._commit(user)

    def reset_failed_logins(
        self,
        user_id: str,
        *,
        now: Optional[datetime] = None,
        last_login: Optional[datetime] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self._require(user_id)
            if now is not None and user.is_locked(now):
                return None
            user.failed_login_count = 0
            user.locked_until = None
            if last_login is not None:
                user.last_login = last_login
            return self._commit(user)

    # epoch / credentials
    def bump_token_epoch(self, user_id: str) -> User:
        with self._data_lock:
            user = self._require(user_id)
            user.token_epoch += 1
            return self._commit(user)

    def advance_token_epoch(self, user_id: str, expected_epoch: int) -> Optional[User]:
        """Compare-and-increment; ``None`` when the epoch already moved on."""
        with self._data_lock:
            user = self._require(user_id)
            if user.token_epoch != expected_epoch:
                return None
            user.token_epoch += 1
            return self._commit(user)

    def rehash_password(
        self, user_id: str, current_hash: str, new_hash: str
    ) -> Optional[User]:
        """Swap in a re-encoded hash of the same password; the epoch is kept."""
        with self._data_lock:
            user = self._require(user_id)
            if user.password_hash != current_hash:
                return None
            user.password_hash = new_hash
            return self._commit(user)

    def set_password(self, user_id: str, password_hash: str) -> User:
        with self._data_lock:
            user = self._require(user_id)
            user.password_hash = password_hash
            user.token_epoch += 1
            return self._commit(user)

    # ephemeral tokens
    def set_ephemeral_token(
        self, user_id: str, kind: str, token: str, expires_at: datetime
    ) -> User:
        token_field, expires_field = ephemeral_fields(kind)
        with self._data_lock:
            user = self._require(user_id)
            setattr(user, token_field, token)
            setattr(user, expires_field, expires_at)
            return self._commit(user)

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
        with self._data_lock:
            user = self._find(
                lambda u: u.is_active
                and getattr(u, token_field) == token
                and getattr(u, expires_field) is not None
                and getattr(u, expires_field) > now
            )
            if user is None:
                return None
            user = replace(user)
            setattr(user, token_field, None)
            setattr(user, expires_field, None)
            if kind == EMAIL_VERIFICATION:
                user.is_verified = True
            elif kind == PASSWORD_RESET:
                if password_hash:
                    user.password_hash = password_hash
                user.token_epoch += 1
            return self._commit(user)

    # oauth / profile
    def _ensure_identity_free(
        self, provider: str, external_id: str, exclude_id: Optional[str] = None
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if (
                existing.oauth_provider == provider
                and existing.oauth_identifier == external_id
            ):
                raise ConstraintViolation(
                    "oauth identity already linked", {"field": "oauth_identifier"}
                )

    def link_oauth_identity(self, user_id: str, provider: str, external_id: str) -> User:
        with self._data_lock:
            user = self._require(user_id)
            self._ensure_identity_free(provider, external_id, exclude_id=user_id)
            user.oauth_provider = provider
            user.oauth_identifier = external_id
            user.is_verified = True
            return self._commit(user)

    def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        new_username = normalize_username(username) if username is not None else None
        new_email = normalize_email(email) if email is not None else None
        with self._data_lock:
            user = self._require(user_id)
            self._ensure_unique(username=new_username, email=new_email, exclude_id=user_id)
            if new_username is not None:
                user.username = new_username
            if new_email is not None and new_email != user.email:
                user.email = new_email
                user.is_verified = False
            return self._commit(user)

    def update_user_role(self, user_id: str, role: str) -> User:
        require_role(role)
        with self._data_lock:
            user = self._require(user_id)
            user.role = role
            user.token_epoch += 1
            return self._commit(user)

    def update_user_plan(self, user_id: str, plan: str) -> User:
        require_plan(plan)
        with self._data_lock:
            user = self._require(user_id)
            user.plan = plan
            user.token_epoch += 1
            return self._commit(user)

    def deactivate_user(self, user_id: str, *, tombstone: str) -> User:
        with self._data_lock:
            user = self._require(user_id)
            user.is_active = False
            user.email = f"{tombstone}{user.email}"
            user.username = f"{tombstone}{user.username}"
            user.token_epoch += 1
            user.email_verification_token = None
            user.email_verification_expires = None
            user.password_reset_token = None
            user.password_reset_expires = None
            return self._commit(user)

    # persistence
    def _persist_state(self, pending: Optional[User] = None) -> None:
        if self.fs_root is None:
            return
        users = dict(self.users)
        if pending is not None:
            users[pending.id] = pending
        state = {"users": [self._serialize_user(u) for u in users.values()]}
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    def _serialize_user(self, user: User) -> dict:
        payload = {}
        for f in fields(User):
            value = getattr(user, f.name)
            payload[f.name] = (
                serialize_datetime(value) if f.name in _DATETIME_FIELDS else value
            )
        return payload

    def _deserialize_user(self, data: dict) -> User:
        known = {f.name for f in fields(User)}
        values = {}
        for key, value in data.items():
            if key not in known:
                continue
            values[key] = deserialize_datetime(value) if key in _DATETIME_FIELDS else value
        if values.get("created_at") is None:
            values.pop("created_at", None)
        if values.get("updated_at") is None:
            values.pop("updated_at", None)
        return User(**values)
