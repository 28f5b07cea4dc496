from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for auth-core failures surfaced to the caller.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized / invalid_token (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"code": self.error_code, "message": self.message, "details": self.detail}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed (401). Messages stay generic to avoid enumeration."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Signed or ephemeral token is malformed, expired, forged or already used (401)."""
    error_code = "invalid_token"


class LockedError(AuthenticationError):
    """Account temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "account_locked"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email or username (409)."""
    status_code = 409
    error_code = "conflict"


class InternalError(ServiceError):
    """Unexpected store or infrastructure failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "LockedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "InternalError",
]
