from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a signing secret persisted under SHARED_FS_ROOT, creating it once.

    Tokens must stay valid across restarts, so a generated secret is written
    atomically with owner-only permissions and reused afterwards.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authcore"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and other deterministic testing behaviors.",
    )

    # Signing: access and refresh tokens use distinct secrets
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    refresh_token_secret: str = env_field(
        None, "REFRESH_TOKEN_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Revoke the presented refresh token (by epoch bump) on every refresh",
    )

    # Brute-force lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")

    # Ephemeral tokens
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(10, "PASSWORD_RESET_TTL_MINUTES")
    store_token_digests: bool = env_field(
        True,
        "STORE_TOKEN_DIGESTS",
        description="Persist only a SHA-256 digest of verification/reset tokens",
    )

    # OAuth settings
    oauth_link_by_email: bool = env_field(
        True,
        "OAUTH_LINK_BY_EMAIL",
        description="Attach an OAuth identity to an existing account with the same email",
    )
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_linkedin_client_id: str | None = env_field(None, "OAUTH_LINKEDIN_CLIENT_ID")
    oauth_linkedin_client_secret: str | None = env_field(None, "OAUTH_LINKEDIN_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_secret")

    @field_validator("refresh_token_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".refresh_token_secret")

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "max_login_attempts",
        "lockout_minutes",
        "email_verification_ttl_hours",
        "password_reset_ttl_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _distinct_signing_secrets(self) -> "Settings":
        # access and refresh tokens are never signed with the same key
        if self.jwt_secret == self.refresh_token_secret:
            raise ValueError("JWT_SECRET and REFRESH_TOKEN_SECRET must differ")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
