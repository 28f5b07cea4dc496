import stat

import pytest
from pydantic import ValidationError

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import _redact_pii, get_correlation_id, set_correlation_id


def test_defaults(settings):
    assert settings.access_token_ttl_minutes == 15
    assert settings.max_login_attempts == 5
    assert settings.lockout_minutes == 30
    assert settings.email_verification_ttl_hours == 24
    assert settings.password_reset_ttl_minutes == 10
    assert settings.store_token_digests is True
    assert settings.rotate_refresh_tokens is False
    assert settings.oauth_link_by_email is True


def test_identical_signing_secrets_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="same-secret-value-xxxxxxxxxxxxxxxx", refresh_token_secret="same-secret-value-xxxxxxxxxxxxxxxx")


@pytest.mark.parametrize("field", ["access_token_ttl_minutes", "max_login_attempts", "lockout_minutes"])
def test_non_positive_values_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="a" * 40, refresh_token_secret="b" * 40, **{field: 0})


def test_missing_secrets_are_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings()
    second = Settings()

    assert first.jwt_secret == second.jwt_secret
    assert first.refresh_token_secret == second.refresh_token_secret
    assert first.jwt_secret != first.refresh_token_secret
    secret_file = tmp_path / ".jwt_secret"
    assert secret_file.read_text().strip() == first.jwt_secret
    assert stat.S_IMODE(secret_file.stat().st_mode) == 0o600


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "7")
    monkeypatch.setenv("ROTATE_REFRESH_TOKENS", "true")
    monkeypatch.setenv("OAUTH_LINK_BY_EMAIL", "false")
    monkeypatch.setenv("JWT_AUDIENCE", "mobile-clients")
    reset_settings_cache()

    settings = get_settings()
    assert settings.max_login_attempts == 7
    assert settings.rotate_refresh_tokens is True
    assert settings.oauth_link_by_email is False
    assert settings.jwt_audience == "mobile-clients"
    assert get_settings() is settings


def test_redaction_masks_credentials():
    event = _redact_pii(
        None,
        "info",
        {"event": "x", "password": "hunter22", "email": "a@b.c", "user_id": "u-1"},
    )
    assert event["password"] == "hu***22"
    assert event["email"] == "a***@b.c"
    assert event["user_id"] == "u-1"


def test_redaction_leaves_descriptive_fields_alone():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "token_rejected",
            "token_type": "access",
            "kind": "password_reset",
            "reason": "expired",
            "refresh_token": "eyJhbGciOi.payload.sig",
            "jwt_secret": "super-secret-value",
            "password_hash": "$argon2id$v=19$m=65536",
            "attempts": 3,
        },
    )
    assert event["token_type"] == "access"
    assert event["kind"] == "password_reset"
    assert event["reason"] == "expired"
    assert event["attempts"] == 3
    assert event["refresh_token"] == "ey***ig"
    assert event["jwt_secret"] == "su***ue"
    assert event["password_hash"].startswith("$a***")


def test_correlation_id_roundtrip():
    cid = set_correlation_id()
    assert get_correlation_id() == cid
    assert set_correlation_id("req-42") == "req-42"
