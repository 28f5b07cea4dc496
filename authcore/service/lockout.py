from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import LockedError
from authcore.storage.common import AuthStore
from authcore.storage.models import User, utcnow

logger = get_logger(__name__)

LOCKED_MESSAGE = "Account is temporarily locked due to multiple failed login attempts"


class LockoutGuard:
    """Per-user brute-force lockout kept on the user record.

    Unlocked -> Locked when a failure brings ``failed_login_count`` to the
    threshold; Locked -> Unlocked once ``locked_until`` has passed, checked
    lazily on the next attempt. Counting goes through the store's atomic
    increment, never a read-then-write of the cached record.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = settings.max_login_attempts
        self.lockout = timedelta(minutes=settings.lockout_minutes)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def ensure_unlocked(self, user: User) -> None:
        """Reject a locked account before any password work is done."""
        if user.is_locked(self.now()):
            logger.info("login_rejected_locked", user_id=user.id)
            raise LockedError(LOCKED_MESSAGE)

    def record_failure(self, user: User) -> User:
        was_locked = user.is_locked(self.now())
        updated = self.store.record_failed_login(
            user.id,
            now=self.now(),
            max_attempts=self.max_attempts,
            lockout=self.lockout,
        )
        if updated.is_locked(self.now()) and not was_locked:
            logger.warning(
                "account_locked",
                user_id=user.id,
                attempts=updated.failed_login_count,
                locked_until=updated.locked_until.isoformat() if updated.locked_until else None,
            )
        else:
            logger.info("login_failed", user_id=user.id, attempts=updated.failed_login_count)
        return updated

    def record_success(self, user: User, *, last_login: Optional[datetime] = None) -> User:
        """Clear the counter after a verified password.

        The reset is conditional in the store: a lock set by concurrent
        failures while the hash was being checked still wins.
        """
        now = self.now()
        updated = self.store.reset_failed_logins(
            user.id, now=now, last_login=last_login or now
        )
        if updated is None:
            logger.info("login_rejected_locked", user_id=user.id, stage="after_verify")
            raise LockedError(LOCKED_MESSAGE)
        return updated
