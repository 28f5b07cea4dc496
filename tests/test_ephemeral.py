import hashlib
from datetime import datetime, timedelta, timezone

import pytest

from authcore.service.ephemeral import EphemeralTokenIssuer
from authcore.service.errors import InvalidTokenError
from authcore.storage.models import EMAIL_VERIFICATION, PASSWORD_RESET


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(memory_store, settings, clock):
    return EphemeralTokenIssuer(memory_store, settings, clock=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("carol", "carol@example.com", "old-hash")


def test_issue_returns_hex_and_stores_digest(issuer, user, memory_store, clock):
    raw = issuer.issue(user, PASSWORD_RESET)
    stored = memory_store.get_user(user.id)

    assert len(raw) == 64
    int(raw, 16)
    assert stored.password_reset_token == hashlib.sha256(raw.encode()).hexdigest()
    assert stored.password_reset_token != raw
    assert stored.password_reset_expires == clock.now + timedelta(minutes=10)


def test_verification_ttl_is_24_hours(issuer, user, memory_store, clock):
    issuer.issue(user, EMAIL_VERIFICATION)
    stored = memory_store.get_user(user.id)
    assert stored.email_verification_expires == clock.now + timedelta(hours=24)


def test_plain_storage_when_digests_disabled(memory_store, settings, clock, user):
    issuer = EphemeralTokenIssuer(
        memory_store, settings.model_copy(update={"store_token_digests": False}), clock=clock
    )
    raw = issuer.issue(user, EMAIL_VERIFICATION)
    assert memory_store.get_user(user.id).email_verification_token == raw
    assert issuer.consume(raw, EMAIL_VERIFICATION).is_verified


def test_verification_consume_marks_verified_once(issuer, user):
    raw = issuer.issue(user, EMAIL_VERIFICATION)
    verified = issuer.consume(raw, EMAIL_VERIFICATION)
    assert verified.is_verified
    assert verified.email_verification_token is None
    with pytest.raises(InvalidTokenError):
        issuer.consume(raw, EMAIL_VERIFICATION)


def test_reset_consume_sets_hash_and_bumps_epoch(issuer, user):
    raw = issuer.issue(user, PASSWORD_RESET)
    updated = issuer.consume(raw, PASSWORD_RESET, new_password_hash="new-hash")
    assert updated.password_hash == "new-hash"
    assert updated.token_epoch == user.token_epoch + 1
    assert updated.password_reset_token is None
    assert updated.password_reset_expires is None


def test_reset_token_is_single_use(issuer, user):
    raw = issuer.issue(user, PASSWORD_RESET)
    issuer.consume(raw, PASSWORD_RESET, new_password_hash="first")
    with pytest.raises(InvalidTokenError) as excinfo:
        issuer.consume(raw, PASSWORD_RESET, new_password_hash="second")
    assert excinfo.value.message == "Invalid or expired token"


def test_expired_token_rejected(issuer, user, clock):
    raw = issuer.issue(user, PASSWORD_RESET)
    clock.now += timedelta(minutes=10, seconds=1)
    with pytest.raises(InvalidTokenError):
        issuer.consume(raw, PASSWORD_RESET, new_password_hash="new-hash")


def test_kinds_are_not_interchangeable(issuer, user):
    raw = issuer.issue(user, EMAIL_VERIFICATION)
    with pytest.raises(InvalidTokenError):
        issuer.consume(raw, PASSWORD_RESET, new_password_hash="new-hash")


def test_reissue_invalidates_previous_token(issuer, user):
    first = issuer.issue(user, PASSWORD_RESET)
    second = issuer.issue(user, PASSWORD_RESET)
    with pytest.raises(InvalidTokenError):
        issuer.consume(first, PASSWORD_RESET, new_password_hash="x")
    assert issuer.consume(second, PASSWORD_RESET, new_password_hash="y").password_hash == "y"


def test_inactive_account_cannot_consume(issuer, user, memory_store):
    raw = issuer.issue(user, EMAIL_VERIFICATION)
    memory_store.deactivate_user(user.id, tombstone="deleted_1_")
    with pytest.raises(InvalidTokenError):
        issuer.consume(raw, EMAIL_VERIFICATION)


@pytest.mark.parametrize("token", ["", None])
def test_empty_token_rejected(issuer, token):
    with pytest.raises(InvalidTokenError):
        issuer.consume(token, EMAIL_VERIFICATION)


def test_unknown_kind_rejected(issuer, user):
    with pytest.raises(ValueError):
        issuer.issue(user, "magic_link")
