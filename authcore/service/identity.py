from __future__ import annotations

import re
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError, ConflictError, ValidationError
from authcore.storage.common import AuthStore
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import OAUTH_PROVIDERS, User, normalize_email

logger = get_logger(__name__)

USERNAME_SEED_LENGTH = 20
_USERNAME_ATTEMPTS = 5
_NON_ALNUM = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class OAuthProfile:
    """Identity asserted by a provider after a completed OAuth handshake."""

    provider: str
    external_id: str
    email: str
    display_name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    avatar_url: Optional[str] = None


def profile_from_userinfo(provider: str, userinfo: dict[str, Any]) -> OAuthProfile:
    """Parse a provider userinfo document into an :class:`OAuthProfile`."""
    if provider == "google":
        external_id = userinfo.get("id") or userinfo.get("sub")
        email = userinfo.get("email")
        display_name = userinfo.get("name") or (email or "").split("@")[0]
        given, family = userinfo.get("given_name"), userinfo.get("family_name")
        avatar = userinfo.get("picture")
    elif provider == "github":
        external_id = userinfo.get("id")
        email = userinfo.get("email")
        # GitHub logins are already unique handles; seed the username from them
        display_name = userinfo.get("login") or userinfo.get("name")
        parts = (userinfo.get("name") or "").split(" ", 1)
        given = parts[0] or userinfo.get("login")
        family = parts[1] if len(parts) > 1 else None
        avatar = userinfo.get("avatar_url")
    elif provider == "linkedin":
        external_id = userinfo.get("sub") or userinfo.get("id")
        email = userinfo.get("email")
        given = userinfo.get("given_name") or userinfo.get("localizedFirstName")
        family = userinfo.get("family_name") or userinfo.get("localizedLastName")
        display_name = userinfo.get("name") or " ".join(p for p in (given, family) if p)
        avatar = userinfo.get("picture")
    else:
        raise ValidationError(f"Unsupported OAuth provider: {provider}")

    if external_id is None or external_id == "":
        raise ValidationError("OAuth profile is missing the provider user id")
    if not email:
        raise ValidationError("OAuth profile is missing an email address")
    return OAuthProfile(
        provider=provider,
        external_id=str(external_id),
        email=normalize_email(email),
        display_name=display_name or None,
        given_name=given or None,
        family_name=family or None,
        avatar_url=avatar or None,
    )


def generate_username(seed: Optional[str]) -> str:
    """Lower-case, strip non-alphanumerics, truncate, add a random numeric suffix."""
    base = _NON_ALNUM.sub("", (seed or "").lower())[:USERNAME_SEED_LENGTH] or "user"
    return f"{base}{secrets.randbelow(1000)}"


class IdentityResolver:
    """Reconciles an OAuth identity with local accounts.

    Resolution order:
    1. existing ``(provider, external_id)`` link -> that user, unchanged;
    2. existing account with the same email -> link the identity to it
       (only while ``link_by_email`` is enabled, otherwise a conflict);
    3. otherwise a new verified account without a password.
    """

    def __init__(self, store: AuthStore, *, link_by_email: bool = True) -> None:
        self.store = store
        self.link_by_email = link_by_email

    def resolve(self, profile: OAuthProfile) -> User:
        if profile.provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"Unsupported OAuth provider: {profile.provider}")
        if not profile.external_id or not profile.email:
            raise ValidationError("Incomplete OAuth profile")

        user = self.store.get_user_by_provider(profile.provider, profile.external_id)
        if user is not None:
            return self._require_active(user)

        existing = self.store.get_user_by_email(profile.email)
        if existing is not None:
            return self._link(existing, profile)

        try:
            return self._create(profile)
        except ConstraintViolation as exc:
            # A concurrent callback for the same identity or email won the insert
            winner = self.store.get_user_by_provider(
                profile.provider, profile.external_id
            ) or self.store.get_user_by_email(profile.email)
            if winner is None:
                raise ConflictError("Unable to create account for OAuth identity") from exc
            if winner.oauth_provider == profile.provider and winner.oauth_identifier == profile.external_id:
                return self._require_active(winner)
            return self._link(winner, profile)

    def _require_active(self, user: User) -> User:
        if not user.is_active:
            logger.warning("oauth_login_inactive_account", user_id=user.id)
            raise AuthenticationError("OAuth authentication failed")
        return user

    def _link(self, user: User, profile: OAuthProfile) -> User:
        self._require_active(user)
        if not self.link_by_email:
            logger.info(
                "oauth_link_refused", user_id=user.id, provider=profile.provider
            )
            raise ConflictError("An account with this email already exists")
        try:
            linked = self.store.link_oauth_identity(
                user.id, profile.provider, profile.external_id
            )
        except ConstraintViolation as exc:
            raise ConflictError("OAuth identity is linked to another account") from exc
        logger.info(
            "oauth_account_linked",
            user_id=user.id,
            provider=profile.provider,
            previous_provider=user.oauth_provider,
        )
        return linked

    def _create(self, profile: OAuthProfile) -> User:
        last_error: Optional[ConstraintViolation] = None
        for attempt in range(_USERNAME_ATTEMPTS + 1):
            if attempt < _USERNAME_ATTEMPTS:
                username = generate_username(profile.display_name)
            else:
                username = f"user{uuid.uuid4().hex[:12]}"
            try:
                user = self.store.create_user(
                    username,
                    profile.email,
                    None,
                    oauth_provider=profile.provider,
                    oauth_identifier=profile.external_id,
                    is_verified=True,
                )
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "username":
                    raise
                last_error = exc
                continue
            logger.info("oauth_account_created", user_id=user.id, provider=profile.provider)
            return user
        if last_error is None:
            raise RuntimeError("no username candidates were attempted")
        raise last_error
