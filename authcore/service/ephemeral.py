from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import InvalidTokenError
from authcore.storage.common import AuthStore
from authcore.storage.models import EMAIL_VERIFICATION, PASSWORD_RESET, User, utcnow

logger = get_logger(__name__)

TOKEN_BYTES = 32


class EphemeralTokenIssuer:
    """Single-use, time-boxed secrets for email verification and password reset.

    The raw token is returned once for out-of-band delivery. With
    ``store_token_digests`` enabled only its SHA-256 digest is written to the
    record; consumption re-hashes the presented value. Consuming clears the
    stored token in the same atomic update that applies its effect, so a
    replay always fails.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.store_digests = settings.store_token_digests
        self._ttl = {
            EMAIL_VERIFICATION: timedelta(hours=settings.email_verification_ttl_hours),
            PASSWORD_RESET: timedelta(minutes=settings.password_reset_ttl_minutes),
        }
        self._clock = clock

    def ttl(self, kind: str) -> timedelta:
        try:
            return self._ttl[kind]
        except KeyError:
            raise ValueError(f"unknown ephemeral token kind: {kind}") from None

    def _stored_value(self, raw_token: str) -> str:
        if not self.store_digests:
            return raw_token
        return hashlib.sha256(raw_token.encode()).hexdigest()

    def issue(self, user: User, kind: str) -> str:
        expires_at = self._clock() + self.ttl(kind)
        raw = secrets.token_hex(TOKEN_BYTES)
        self.store.set_ephemeral_token(user.id, kind, self._stored_value(raw), expires_at)
        logger.info("ephemeral_token_issued", user_id=user.id, kind=kind)
        return raw

    def consume(
        self,
        raw_token: str,
        kind: str,
        *,
        new_password_hash: Optional[str] = None,
    ) -> User:
        self.ttl(kind)
        if not raw_token or not isinstance(raw_token, str):
            raise InvalidTokenError("Invalid or expired token")
        user = self.store.consume_ephemeral_token(
            kind,
            self._stored_value(raw_token),
            now=self._clock(),
            password_hash=new_password_hash,
        )
        if user is None:
            logger.warning("ephemeral_token_rejected", kind=kind)
            raise InvalidTokenError("Invalid or expired token")
        logger.info("ephemeral_token_consumed", user_id=user.id, kind=kind)
        return user
