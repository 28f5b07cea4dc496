from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from authcore.service.errors import AuthenticationError, ValidationError
from authcore.service.oauth import GITHUB_EMAILS_URL, OAUTH_ENDPOINTS, OAuthClient


@pytest.fixture
def oauth_settings(settings):
    return settings.model_copy(
        update={
            "oauth_google_client_id": "google-id",
            "oauth_google_client_secret": "google-secret",
            "oauth_github_client_id": "github-id",
            "oauth_github_client_secret": "github-secret",
            "oauth_redirect_uri": "https://app.example.com/oauth/callback",
        }
    )


def _client(settings, routes):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        url = request.url
        key = (request.method, f"{url.scheme}://{url.host}{url.path}")
        status, body = routes[key]
        return httpx.Response(status, json=body)

    return OAuthClient(settings, transport=httpx.MockTransport(handler)), seen


def test_authorization_url(oauth_settings):
    client = OAuthClient(oauth_settings)
    url = urlparse(client.authorization_url("google", "state-123"))
    params = parse_qs(url.query)
    assert url.netloc == "accounts.google.com"
    assert params["client_id"] == ["google-id"]
    assert params["state"] == ["state-123"]
    assert params["response_type"] == ["code"]
    assert params["redirect_uri"] == ["https://app.example.com/oauth/callback"]


def test_authorization_url_rejects_unconfigured_provider(oauth_settings):
    with pytest.raises(ValidationError):
        OAuthClient(oauth_settings).authorization_url("linkedin", "state")


def test_insecure_redirect_rejected(oauth_settings):
    client = OAuthClient(oauth_settings)
    with pytest.raises(ValidationError):
        client.authorization_url("google", "s", redirect_uri="http://evil.example.com/cb")
    assert client.authorization_url("google", "s", redirect_uri="http://localhost:8000/cb")


async def test_google_exchange(oauth_settings):
    google = OAUTH_ENDPOINTS["google"]
    client, seen = _client(
        oauth_settings,
        {
            ("POST", google["token_url"]): (200, {"access_token": "at-1"}),
            ("GET", google["userinfo_url"]): (
                200,
                {"id": "g-55", "email": "Zoe@Example.com", "name": "Zoe"},
            ),
        },
    )
    profile = await client.fetch_profile("google", "auth-code")

    assert profile.provider == "google"
    assert profile.external_id == "g-55"
    assert profile.email == "zoe@example.com"
    token_form = parse_qs(seen[0].content.decode())
    assert token_form["code"] == ["auth-code"]
    assert token_form["grant_type"] == ["authorization_code"]
    assert seen[1].headers["Authorization"] == "Bearer at-1"


async def test_github_falls_back_to_primary_verified_email(oauth_settings):
    github = OAUTH_ENDPOINTS["github"]
    client, _ = _client(
        oauth_settings,
        {
            ("POST", github["token_url"]): (200, {"access_token": "at-2"}),
            ("GET", github["userinfo_url"]): (200, {"id": 9, "login": "octo", "email": None}),
            ("GET", GITHUB_EMAILS_URL): (
                200,
                [
                    {"email": "old@example.com", "primary": False, "verified": True},
                    {"email": "octo@example.com", "primary": True, "verified": True},
                ],
            ),
        },
    )
    profile = await client.fetch_profile("github", "auth-code")
    assert profile.email == "octo@example.com"
    assert profile.external_id == "9"


async def test_token_endpoint_error_fails_closed(oauth_settings):
    google = OAUTH_ENDPOINTS["google"]
    client, _ = _client(
        oauth_settings, {("POST", google["token_url"]): (400, {"error": "invalid_grant"})}
    )
    with pytest.raises(AuthenticationError) as excinfo:
        await client.fetch_profile("google", "bad-code")
    assert excinfo.value.message == "OAuth authentication failed"


async def test_missing_access_token_fails_closed(oauth_settings):
    google = OAUTH_ENDPOINTS["google"]
    client, _ = _client(oauth_settings, {("POST", google["token_url"]): (200, {})})
    with pytest.raises(AuthenticationError):
        await client.fetch_profile("google", "code")


async def test_profile_without_email_fails_closed(oauth_settings):
    github = OAUTH_ENDPOINTS["github"]
    client, _ = _client(
        oauth_settings,
        {
            ("POST", github["token_url"]): (200, {"access_token": "at-3"}),
            ("GET", github["userinfo_url"]): (200, {"id": 9, "login": "octo"}),
            ("GET", GITHUB_EMAILS_URL): (404, {}),
        },
    )
    with pytest.raises(AuthenticationError):
        await client.fetch_profile("github", "code")


async def test_controller_exchange_resolves_identity(oauth_settings, memory_store):
    from authcore.service.sessions import SessionController

    google = OAUTH_ENDPOINTS["google"]
    client, _ = _client(
        oauth_settings,
        {
            ("POST", google["token_url"]): (200, {"access_token": "at-4"}),
            ("GET", google["userinfo_url"]): (
                200,
                {"id": "g-77", "email": "yan@example.com", "name": "Yan"},
            ),
        },
    )
    controller = SessionController(memory_store, oauth_settings, oauth_client=client)
    result = await controller.oauth_exchange("google", "code")
    assert result.user.oauth_identifier == "g-77"
    assert (await controller.authenticate(result.tokens.access_token)).user_id == result.user.id


async def test_github_emails_body_that_is_not_a_list_fails_closed(oauth_settings):
    github = OAUTH_ENDPOINTS["github"]
    client, _ = _client(
        oauth_settings,
        {
            ("POST", github["token_url"]): (200, {"access_token": "at-5"}),
            ("GET", github["userinfo_url"]): (200, {"id": 9, "login": "octo"}),
            ("GET", GITHUB_EMAILS_URL): (200, 42),
        },
    )
    with pytest.raises(AuthenticationError) as excinfo:
        await client.fetch_profile("github", "code")
    assert excinfo.value.message == "OAuth authentication failed"
