from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.ephemeral import EphemeralTokenIssuer
from authcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InternalError,
    InvalidTokenError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from authcore.service.identity import IdentityResolver, OAuthProfile
from authcore.service.lockout import LockoutGuard
from authcore.service.oauth import OAuthClient
from authcore.service.passwords import PasswordService
from authcore.service.tokens import TokenPair, TokenService
from authcore.storage.common import AuthStore, tombstone_prefix
from authcore.storage.errors import ConstraintViolation, RecordNotFound
from authcore.storage.models import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    PLANS,
    ROLES,
    User,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
MIN_PASSWORD_LENGTH = 8

_CONFLICT_MESSAGES = {
    "email": "Email is already registered",
    "username": "Username is already taken",
    "oauth_identifier": "OAuth identity is linked to another account",
}


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    verification_token: Optional[str] = None


@dataclass
class AuthContext:
    user_id: str
    role: str
    plan: str
    token_epoch: int
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class SessionController:
    """Entry points for every credential-bearing request.

    Each operation runs its checks in order and mints tokens only once all of
    them passed. Tokens are bound to the user's ``token_epoch``; logout,
    password changes, resets, role/plan changes and deletion advance the
    epoch, which revokes every outstanding token for that user at once.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        passwords: Optional[PasswordService] = None,
        tokens: Optional[TokenService] = None,
        lockout: Optional[LockoutGuard] = None,
        ephemeral: Optional[EphemeralTokenIssuer] = None,
        identity: Optional[IdentityResolver] = None,
        oauth_client: Optional[OAuthClient] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords or PasswordService()
        self.tokens = tokens or TokenService(settings)
        self.lockout = lockout or LockoutGuard(store, settings)
        self.ephemeral = ephemeral or EphemeralTokenIssuer(store, settings)
        self.identity = identity or IdentityResolver(
            store, link_by_email=settings.oauth_link_by_email
        )
        self.oauth_client = oauth_client

    @contextlib.contextmanager
    def _store_errors(self, action: str) -> Iterator[None]:
        """Translate storage failures into service errors."""
        try:
            yield
        except ServiceError:
            raise
        except ConstraintViolation as exc:
            field_name = exc.detail.get("field")
            message = _CONFLICT_MESSAGES.get(field_name, "Resource already exists")
            raise ConflictError(message, detail={"field": field_name}) from exc
        except RecordNotFound as exc:
            raise NotFoundError("User not found") from exc
        except Exception as exc:
            logger.error("auth_store_failure", action=action, error=str(exc))
            raise InternalError("Internal error") from exc

    def _validate_password(self, password: Optional[str]) -> str:
        if not password:
            raise ValidationError("Password is required")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        return password

    def _validate_username(self, username: Optional[str]) -> str:
        if not username or not username.strip():
            raise ValidationError("Username is required", detail={"field": "username"})
        # login resolves identifiers containing "@" as email addresses
        if "@" in username:
            raise ValidationError(
                "Username may not contain '@'", detail={"field": "username"}
            )
        return username

    def _validate_email(self, email: Optional[str]) -> str:
        if not email or "@" not in email:
            raise ValidationError("A valid email is required", detail={"field": "email"})
        return email

    def _load_active(self, user_id: str) -> User:
        user = self.store.get_user(user_id) if user_id else None
        if user is None or not user.is_active:
            raise NotFoundError("User not found")
        return user

    # registration / login

    async def register(self, username: str, email: str, password: str) -> AuthResult:
        self._validate_username(username)
        self._validate_email(email)
        self._validate_password(password)
        password_hash = await self.passwords.hash_async(password)
        with self._store_errors("register"):
            user = self.store.create_user(username, email, password_hash)
            verification_token = self.ephemeral.issue(user, EMAIL_VERIFICATION)
            tokens = self.tokens.issue(user)
        logger.info("user_registered", user_id=user.id)
        return AuthResult(user=user, tokens=tokens, verification_token=verification_token)

    async def login(self, identifier: str, password: str) -> AuthResult:
        """Password login by email or username.

        Unknown accounts, wrong passwords and password-less (OAuth-only)
        accounts all fail with the same ``AuthenticationError`` after a full
        hash verification. A locked account fails with ``LockedError`` before
        any password work and without counting an attempt, and also when
        concurrent failures locked it while the password was being checked.
        """
        if not identifier or not password:
            raise AuthenticationError(INVALID_CREDENTIALS)
        with self._store_errors("login"):
            user = self.store.get_user_by_login(identifier)
            if user is None:
                await self.passwords.verify_async(None, password)
                logger.info("login_unknown_account")
                raise AuthenticationError(INVALID_CREDENTIALS)
            self.lockout.ensure_unlocked(user)
            if not user.has_password:
                await self.passwords.verify_async(None, password)
                logger.info("login_password_not_set", user_id=user.id)
                raise AuthenticationError(INVALID_CREDENTIALS)
            if not await self.passwords.verify_async(user.password_hash, password):
                self.lockout.record_failure(user)
                raise AuthenticationError(INVALID_CREDENTIALS)
            user = self.lockout.record_success(user)
            if not user.is_active:
                raise AuthenticationError(INVALID_CREDENTIALS)
            if self.passwords.needs_rehash(user.password_hash):
                user = await self._upgrade_hash(user, password)
            tokens = self.tokens.issue(user)
        logger.info("login_success", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    async def _upgrade_hash(self, user: User, password: str) -> User:
        new_hash = await self.passwords.hash_async(password)
        upgraded = self.store.rehash_password(user.id, user.password_hash, new_hash)
        if upgraded is None:
            # password changed concurrently; keep whatever is stored now
            return user
        logger.info("password_rehashed", user_id=user.id)
        return upgraded

    # token lifecycle

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = self.tokens.verify_refresh(refresh_token)
        with self._store_errors("refresh"):
            user = self.store.get_user(claims["sub"])
            if user is None or not user.is_active:
                logger.info("refresh_rejected", reason="inactive_or_missing")
                raise InvalidTokenError("Invalid refresh token")
            if not self.tokens.epoch_matches(claims, user):
                logger.info("refresh_rejected", reason="epoch_mismatch", user_id=user.id)
                raise InvalidTokenError("Invalid refresh token")
            if self.settings.rotate_refresh_tokens:
                rotated = self.store.advance_token_epoch(user.id, user.token_epoch)
                if rotated is None:
                    logger.warning("refresh_rotation_race", user_id=user.id)
                    raise InvalidTokenError("Invalid refresh token")
                user = rotated
                logger.info("token_epoch_bumped", user_id=user.id, reason="refresh_rotation")
            return self.tokens.issue(user)

    async def authenticate(self, access_token: str) -> AuthContext:
        claims = self.tokens.verify_access(access_token)
        with self._store_errors("authenticate"):
            user = self.store.get_user(claims["sub"])
        if user is None or not user.is_active or not self.tokens.epoch_matches(claims, user):
            raise InvalidTokenError("Invalid access token")
        return AuthContext(
            user_id=user.id,
            role=user.role,
            plan=user.plan,
            token_epoch=user.token_epoch,
            claims=claims,
        )

    async def authenticate_header(self, authorization: Optional[str]) -> AuthContext:
        token = self.tokens.extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("Missing bearer token")
        return await self.authenticate(token)

    async def logout(self, user_id: str) -> None:
        """Revoke every token held by ``user_id`` by advancing its epoch."""
        with self._store_errors("logout"):
            user = self.store.bump_token_epoch(user_id)
        logger.info("token_epoch_bumped", user_id=user.id, reason="logout")

    # profile

    async def get_current_user(self, user_id: str) -> dict:
        """Public projection of an active account."""
        with self._store_errors("get_current_user"):
            user = self._load_active(user_id)
        return user.summary()

    async def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        """Change username and/or email.

        A changed email drops ``is_verified``; the caller re-sends
        verification. Tokens stay valid since no claim changes.
        """
        if username is not None:
            self._validate_username(username)
        if email is not None:
            self._validate_email(email)
        with self._store_errors("update_profile"):
            self._load_active(user_id)
            user = self.store.update_profile(user_id, username=username, email=email)
        logger.info(
            "profile_updated",
            user_id=user.id,
            username_changed=username is not None,
            email_changed=email is not None,
        )
        return user

    # email verification / password reset

    async def verify_email(self, token: str) -> User:
        with self._store_errors("verify_email"):
            user = self.ephemeral.consume(token, EMAIL_VERIFICATION)
        logger.info("email_verified", user_id=user.id)
        return user

    async def resend_verification(self, user_id: str) -> str:
        with self._store_errors("resend_verification"):
            user = self._load_active(user_id)
            if user.is_verified:
                raise ValidationError("Email is already verified")
            return self.ephemeral.issue(user, EMAIL_VERIFICATION)

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset token for delivery by email.

        Returns ``None`` for unknown or inactive addresses so the caller can
        answer identically either way.
        """
        if not email:
            raise ValidationError("Email is required", detail={"field": "email"})
        with self._store_errors("request_password_reset"):
            user = self.store.get_user_by_email(email)
            if user is None or not user.is_active:
                logger.info("password_reset_unknown_email")
                return None
            token = self.ephemeral.issue(user, PASSWORD_RESET)
        logger.info("password_reset_requested", user_id=user.id)
        return token

    async def reset_password(self, token: str, new_password: str) -> User:
        self._validate_password(new_password)
        if not token:
            raise InvalidTokenError("Invalid or expired token")
        password_hash = await self.passwords.hash_async(new_password)
        with self._store_errors("reset_password"):
            user = self.ephemeral.consume(token, PASSWORD_RESET, new_password_hash=password_hash)
            # a completed reset also clears any pending lock
            user = self.store.reset_failed_logins(user.id)
        logger.info("password_reset_completed", user_id=user.id)
        logger.info("token_epoch_bumped", user_id=user.id, reason="password_reset")
        return user

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> User:
        self._validate_password(new_password)
        with self._store_errors("change_password"):
            user = self._load_active(user_id)
            if not await self.passwords.verify_async(user.password_hash, current_password or ""):
                logger.info("password_change_rejected", user_id=user.id)
                raise AuthenticationError("Current password is incorrect")
            password_hash = await self.passwords.hash_async(new_password)
            user = self.store.set_password(user.id, password_hash)
        logger.info("password_changed", user_id=user.id)
        logger.info("token_epoch_bumped", user_id=user.id, reason="password_change")
        return user

    # oauth

    async def oauth_callback(self, profile: OAuthProfile) -> AuthResult:
        with self._store_errors("oauth_callback"):
            user = self.identity.resolve(profile)
            tokens = self.tokens.issue(user)
        logger.info("oauth_login_success", user_id=user.id, provider=profile.provider)
        return AuthResult(user=user, tokens=tokens)

    async def oauth_exchange(
        self, provider: str, code: str, redirect_uri: Optional[str] = None
    ) -> AuthResult:
        """Complete an authorization-code flow end to end."""
        if self.oauth_client is None:
            raise ValidationError("OAuth is not configured")
        profile = await self.oauth_client.fetch_profile(provider, code, redirect_uri)
        return await self.oauth_callback(profile)

    # account administration

    async def delete_account(self, user_id: str, password: Optional[str] = None) -> User:
        with self._store_errors("delete_account"):
            user = self._load_active(user_id)
            if user.has_password and not await self.passwords.verify_async(
                user.password_hash, password or ""
            ):
                logger.info("account_deletion_rejected", user_id=user.id)
                raise AuthenticationError("Invalid password")
            user = self.store.deactivate_user(
                user.id, tombstone=tombstone_prefix(self.lockout.now())
            )
        logger.info("account_deleted", user_id=user.id)
        return user

    def require_admin(self, actor: Optional[AuthContext]) -> None:
        if actor is None or not actor.is_admin:
            raise ForbiddenError("Admin role required")

    async def force_logout(self, user_id: str, *, actor: Optional[AuthContext] = None) -> None:
        if actor is not None:
            self.require_admin(actor)
        with self._store_errors("force_logout"):
            user = self.store.bump_token_epoch(user_id)
        logger.warning(
            "sessions_revoked",
            user_id=user.id,
            actor_id=actor.user_id if actor else None,
        )

    async def set_role(
        self, user_id: str, role: str, *, actor: Optional[AuthContext] = None
    ) -> User:
        if actor is not None:
            self.require_admin(actor)
        if role not in ROLES:
            raise ValidationError(f"Unknown role: {role}", detail={"field": "role"})
        with self._store_errors("set_role"):
            user = self.store.update_user_role(user_id, role)
        logger.info("user_role_updated", user_id=user.id, role=role)
        return user

    async def set_plan(
        self, user_id: str, plan: str, *, actor: Optional[AuthContext] = None
    ) -> User:
        if actor is not None:
            self.require_admin(actor)
        if plan not in PLANS:
            raise ValidationError(f"Unknown plan: {plan}", detail={"field": "plan"})
        with self._store_errors("set_plan"):
            user = self.store.update_user_plan(user_id, plan)
        logger.info("user_plan_updated", user_id=user.id, plan=plan)
        return user
