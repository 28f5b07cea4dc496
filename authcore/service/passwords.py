from __future__ import annotations

import asyncio
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger

logger = get_logger(__name__)

# Verified against when an account has no usable hash, so unknown users and
# OAuth-only accounts cost the same time as a wrong password.
_DUMMY_PASSWORD = "authcore-timing-equalizer"


class PasswordService:
    """argon2id hashing; async helpers push the CPU work onto a worker thread."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._hasher.hash(_DUMMY_PASSWORD)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash:
            self._burn(password)
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def _burn(self, password: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    async def hash_async(self, password: str) -> str:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(self, password_hash: Optional[str], password: str) -> bool:
        return await asyncio.to_thread(self.verify, password_hash, password)
