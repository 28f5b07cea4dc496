"""Unit tests for access/refresh token minting and verification."""

import base64
import json
import time

import pytest

from authcore.service.errors import InvalidTokenError
from authcore.service.tokens import TokenService
from authcore.storage.models import User


@pytest.fixture
def token_service(settings):
    return TokenService(settings)


@pytest.fixture
def user():
    return User(id="user-1", username="alice", email="alice@example.com", role="premium", plan="premium", token_epoch=3)


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _claims(token: str) -> dict:
    payload = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))


class TestIssue:
    def test_access_claims(self, token_service, user, settings):
        pair = token_service.issue(user)
        claims = token_service.verify_access(pair.access_token)

        assert claims["sub"] == user.id
        assert claims["role"] == "premium"
        assert claims["plan"] == "premium"
        assert claims["tkv"] == 3
        assert claims["token_type"] == "access"
        assert claims["iss"] == settings.jwt_issuer
        assert claims["aud"] == settings.jwt_audience
        assert claims["exp"] - claims["iat"] == 15 * 60
        assert claims["jti"]

    def test_refresh_claims_omit_role(self, token_service, user):
        pair = token_service.issue(user)
        claims = token_service.verify_refresh(pair.refresh_token)

        assert claims["token_type"] == "refresh"
        assert claims["tkv"] == 3
        assert "role" not in claims
        assert claims["exp"] - claims["iat"] == 24 * 60 * 60

    def test_pair_shape(self, token_service, user):
        pair = token_service.issue(user)
        data = pair.as_dict()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 15 * 60
        assert pair.access_token != pair.refresh_token

    def test_jti_unique_per_issue(self, token_service, user):
        first = token_service.issue(user)
        second = token_service.issue(user)
        assert _claims(first.access_token)["jti"] != _claims(second.access_token)["jti"]


class TestVerify:
    def test_refresh_token_rejected_as_access(self, token_service, user):
        pair = token_service.issue(user)
        with pytest.raises(InvalidTokenError):
            token_service.verify_access(pair.refresh_token)

    def test_access_token_rejected_as_refresh(self, token_service, user):
        pair = token_service.issue(user)
        with pytest.raises(InvalidTokenError):
            token_service.verify_refresh(pair.access_token)

    def test_tampered_payload_rejected(self, token_service, user):
        pair = token_service.issue(user)
        header, _, signature = pair.access_token.split(".")
        claims = _claims(pair.access_token)
        claims["role"] = "admin"
        forged = f"{header}.{_b64(claims)}.{signature}"
        with pytest.raises(InvalidTokenError):
            token_service.verify_access(forged)

    def test_none_algorithm_rejected(self, token_service, user):
        pair = token_service.issue(user)
        claims = _claims(pair.access_token)
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(claims)}."
        with pytest.raises(InvalidTokenError):
            token_service.verify_access(forged)

    @pytest.mark.parametrize("token", ["", "garbage", "a.b", "a.b.c.d"])
    def test_malformed_rejected(self, token_service, token):
        with pytest.raises(InvalidTokenError):
            token_service.verify_access(token)

    def test_expired_token_rejected(self, token_service, user):
        now = int(time.time())
        payload = {
            "iss": token_service.settings.jwt_issuer,
            "aud": token_service.settings.jwt_audience,
            "sub": user.id,
            "tkv": 0,
            "token_type": "access",
            "iat": now - 3600,
            "exp": now - 120,
        }
        token = token_service._encode_jwt(payload, "access")
        with pytest.raises(InvalidTokenError):
            token_service.verify_access(token)

    def test_within_clock_skew_accepted(self, token_service, user):
        now = int(time.time())
        payload = {
            "iss": token_service.settings.jwt_issuer,
            "aud": token_service.settings.jwt_audience,
            "sub": user.id,
            "tkv": 0,
            "token_type": "access",
            "iat": now - 900,
            "exp": now - 5,
        }
        token = token_service._encode_jwt(payload, "access")
        assert token_service.verify_access(token)["sub"] == user.id

    def test_wrong_audience_rejected(self, settings, user):
        other = TokenService(settings.model_copy(update={"jwt_audience": "someone-else"}))
        pair = other.issue(user)
        with pytest.raises(InvalidTokenError):
            TokenService(settings).verify_access(pair.access_token)

    def test_wrong_issuer_rejected(self, settings, user):
        other = TokenService(settings.model_copy(update={"jwt_issuer": "rogue"}))
        pair = other.issue(user)
        with pytest.raises(InvalidTokenError):
            TokenService(settings).verify_access(pair.access_token)

    def test_access_secret_does_not_sign_refresh(self, settings, user):
        swapped = settings.model_copy(
            update={
                "jwt_secret": settings.refresh_token_secret,
                "refresh_token_secret": settings.jwt_secret,
            }
        )
        pair = TokenService(swapped).issue(user)
        service = TokenService(settings)
        with pytest.raises(InvalidTokenError):
            service.verify_access(pair.access_token)
        with pytest.raises(InvalidTokenError):
            service.verify_refresh(pair.refresh_token)


class TestEpochAndBearer:
    def test_epoch_matches(self, token_service, user):
        claims = token_service.verify_access(token_service.issue(user).access_token)
        assert TokenService.epoch_matches(claims, user)
        user.token_epoch += 1
        assert not TokenService.epoch_matches(claims, user)

    def test_epoch_requires_integer_claim(self, user):
        assert not TokenService.epoch_matches({"tkv": "3"}, user)
        assert not TokenService.epoch_matches({}, user)

    def test_extract_bearer(self):
        assert TokenService.extract_bearer("Bearer abc.def") == "abc.def"
        assert TokenService.extract_bearer("bearer  xyz ") == "xyz"
        assert TokenService.extract_bearer("Basic dXNlcg==") is None
        assert TokenService.extract_bearer("Bearer ") is None
        assert TokenService.extract_bearer(None) is None
