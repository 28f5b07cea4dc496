from authcore.service.runtime import _mask_url_password, get_runtime, reset_runtime_for_tests
from authcore.storage.memory import MemoryStore


def test_runtime_is_a_singleton_wired_to_memory_store():
    runtime = get_runtime()
    assert get_runtime() is runtime
    assert isinstance(runtime.store, MemoryStore)
    assert runtime.sessions.store is runtime.store
    assert runtime.sessions.oauth_client is runtime.oauth


def test_reset_builds_a_fresh_runtime():
    before = get_runtime()
    after = reset_runtime_for_tests()
    assert after is not before
    assert get_runtime() is after


async def test_runtime_controller_round_trip():
    sessions = get_runtime().sessions
    result = await sessions.register("tess", "tess@example.com", "CorrectHorse1!")
    context = await sessions.authenticate(result.tokens.access_token)
    assert context.user_id == result.user.id


def test_mask_url_password():
    assert (
        _mask_url_password("postgresql://app:secret@db:5432/auth")
        == "postgresql://app:***@db:5432/auth"
    )
    assert _mask_url_password("postgresql://db/auth") == "postgresql://db/auth"
    assert _mask_url_password(None) is None
