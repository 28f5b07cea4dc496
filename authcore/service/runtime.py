from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.ephemeral import EphemeralTokenIssuer
from authcore.service.identity import IdentityResolver
from authcore.service.lockout import LockoutGuard
from authcore.service.oauth import OAuthClient
from authcore.service.passwords import PasswordService
from authcore.service.sessions import SessionController
from authcore.service.tokens import TokenService
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***``.

    Example: postgresql://app:secret@db:5432/auth -> postgresql://app:***@db:5432/auth
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store and the service singletons for one process."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.passwords = PasswordService()
        self.tokens = TokenService(self.settings)
        self.lockout = LockoutGuard(self.store, self.settings)
        self.ephemeral = EphemeralTokenIssuer(self.store, self.settings)
        self.identity = IdentityResolver(
            self.store, link_by_email=self.settings.oauth_link_by_email
        )
        self.oauth = OAuthClient(self.settings)
        self.sessions = SessionController(
            self.store,
            self.settings,
            passwords=self.passwords,
            tokens=self.tokens,
            lockout=self.lockout,
            ephemeral=self.ephemeral,
            identity=self.identity,
            oauth_client=self.oauth,
        )
        logger.info("runtime_init_completed")

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
