from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode, urlparse

import httpx

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError, ValidationError
from authcore.service.identity import OAuthProfile, profile_from_userinfo

# OAuth provider configurations
OAUTH_ENDPOINTS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "linkedin": {
        "auth_url": "https://www.linkedin.com/oauth/v2/authorization",
        "token_url": "https://www.linkedin.com/oauth/v2/accessToken",
        "userinfo_url": "https://api.linkedin.com/v2/userinfo",
        "scope": "openid profile email",
    },
}

GITHUB_EMAILS_URL = "https://api.github.com/user/emails"

logger = get_logger(__name__)

_FAILED = "OAuth authentication failed"


class OAuthClient:
    """Authorization-code exchange against the supported providers.

    Produces the :class:`OAuthProfile` handed to the identity resolver. State
    generation and checking belong to the callback handler that owns the
    browser session.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._timeout = timeout

    def _credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        elif provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        elif provider == "linkedin":
            return self.settings.oauth_linkedin_client_id, self.settings.oauth_linkedin_client_secret
        return None, None

    def _redirect_uri(self, redirect_uri: Optional[str]) -> str:
        callback_uri = redirect_uri or self.settings.oauth_redirect_uri
        if not callback_uri:
            raise ValidationError("No OAuth redirect URI configured")
        parsed = urlparse(callback_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("Insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise ValidationError("OAuth redirect URI must include host")
        return callback_uri

    def authorization_url(
        self, provider: str, state: str, redirect_uri: Optional[str] = None
    ) -> str:
        if provider not in OAUTH_ENDPOINTS:
            raise ValidationError(f"Unsupported OAuth provider: {provider}")
        client_id, _ = self._credentials(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")
        if not state:
            raise ValidationError("OAuth state is required")
        endpoints = OAUTH_ENDPOINTS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self._redirect_uri(redirect_uri),
            "response_type": "code",
            "scope": endpoints["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "online"
            params["prompt"] = "select_account"
        return f"{endpoints['auth_url']}?{urlencode(params)}"

    async def fetch_profile(
        self, provider: str, code: str, redirect_uri: Optional[str] = None
    ) -> OAuthProfile:
        """Exchange an authorization code and return the provider's identity."""
        if provider not in OAUTH_ENDPOINTS:
            raise ValidationError(f"Unsupported OAuth provider: {provider}")
        if not code:
            raise ValidationError("OAuth code is required")
        client_id, client_secret = self._credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")
        callback_uri = self._redirect_uri(redirect_uri)
        endpoints = OAUTH_ENDPOINTS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    endpoints["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": callback_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise AuthenticationError(_FAILED)

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(endpoints["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    raise AuthenticationError(_FAILED)

                # GitHub hides private addresses from /user
                if provider == "github" and not userinfo.get("email"):
                    emails_response = await client.get(GITHUB_EMAILS_URL, headers=headers)
                    if emails_response.status_code == 200:
                        emails = emails_response.json()
                        if not isinstance(emails, list):
                            emails = []
                        userinfo["email"] = next(
                            (
                                e.get("email")
                                for e in emails
                                if isinstance(e, dict) and e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise AuthenticationError(_FAILED) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise AuthenticationError(_FAILED) from exc

        try:
            profile = profile_from_userinfo(provider, userinfo)
        except ValidationError as exc:
            logger.error("oauth_identity_incomplete", provider=provider, error=exc.message)
            raise AuthenticationError(_FAILED) from exc
        logger.info("oauth_exchange_success", provider=provider)
        return profile
