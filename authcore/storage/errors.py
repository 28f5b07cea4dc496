from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RecordNotFound(Exception):
    """Raised when an atomic update targets a user id that does not exist."""

    def __init__(self, user_id: str):
        super().__init__(f"user not found: {user_id}")
        self.user_id = user_id


__all__ = ["ConstraintViolation", "RecordNotFound"]
