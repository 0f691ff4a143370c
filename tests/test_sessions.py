"""Tests for the session store: pointer authority, throttled refresh and eviction."""

import time

import pytest

from sessionguard.service.sessions import SessionStore
from sessionguard.storage.errors import StoreUnavailableError


@pytest.fixture
def sessions(kv):
    return SessionStore(kv, ttl_seconds=300, refresh_throttle_seconds=30)


async def test_create_then_get_round_trip(sessions):
    await sessions.create("user-1", "sess-1", {"email": "a@example.com", "first_name": "Ada"})
    record = await sessions.get("sess-1")
    assert record is not None
    assert record.user_id == "user-1"
    assert record.email == "a@example.com"
    assert await sessions.active_session_id("user-1") == "sess-1"


async def test_pointer_shares_session_ttl(sessions, kv):
    await sessions.create("user-1", "sess-1")
    assert 0 < await kv.ttl("active_session:user-1") <= 300


async def test_resolve_requires_pointer(sessions):
    await sessions.create("user-1", "sess-old")
    await sessions.create("user-1", "sess-new")
    # stale record still exists but the pointer names the newer session
    assert await sessions.get("sess-old") is not None
    assert await sessions.resolve("sess-old", "user-1") is None
    assert (await sessions.resolve("sess-new", "user-1")).session_id == "sess-new"
    assert await sessions.resolve("sess-new", "someone-else") is None
    assert (await sessions.get_active("user-1")).session_id == "sess-new"


async def test_delete_all_for_user_evicts_pointed_session(sessions):
    await sessions.create("user-1", "sess-1")
    assert await sessions.delete_all_for_user("user-1") == "sess-1"
    assert await sessions.get("sess-1") is None
    assert await sessions.active_session_id("user-1") is None


async def test_delete_all_for_user_without_session_is_noop(sessions):
    assert await sessions.delete_all_for_user("nobody") is None


async def test_delete_keeps_pointer_to_other_session(sessions):
    await sessions.create("user-1", "sess-old")
    await sessions.create("user-1", "sess-new")
    assert await sessions.delete("sess-old")
    assert await sessions.active_session_id("user-1") == "sess-new"
    assert await sessions.delete("sess-new")
    assert await sessions.active_session_id("user-1") is None
    assert not await sessions.delete("sess-new")


async def test_refresh_slides_ttl(sessions, kv):
    await sessions.create("user-1", "sess-1")
    await kv.expire("session:sess-1", 20)
    await kv.expire("active_session:user-1", 20)
    assert await sessions.refresh("sess-1")
    assert await kv.ttl("session:sess-1") > 20
    assert await kv.ttl("active_session:user-1") > 20
    assert await kv.get("session_refresh:sess-1") is not None


async def test_refresh_is_throttled_unless_forced(sessions, kv):
    await sessions.create("user-1", "sess-1")
    assert await sessions.refresh("sess-1")
    await kv.expire("session:sess-1", 20)

    # within the window: reports success without touching the TTL
    assert await sessions.refresh("sess-1")
    assert await kv.ttl("session:sess-1") <= 20

    assert await sessions.refresh("sess-1", force=True)
    assert await kv.ttl("session:sess-1") > 20


async def test_refresh_after_window_elapses(sessions, kv):
    await sessions.create("user-1", "sess-1")
    stale = int(time.time() * 1000) - 31_000
    await kv.set_with_ttl("session_refresh:sess-1", str(stale), 30)
    await kv.expire("session:sess-1", 20)
    assert await sessions.refresh("sess-1")
    assert await kv.ttl("session:sess-1") > 20


async def test_refresh_missing_session_returns_false(sessions):
    assert not await sessions.refresh("ghost", force=True)


async def test_time_left(sessions):
    await sessions.create("user-1", "sess-1")
    assert 0 < await sessions.time_left("sess-1") <= 300
    assert await sessions.time_left("ghost") == 0


async def test_unreachable_store_fails_open(down_kv):
    sessions = SessionStore(down_kv)
    record = await sessions.create("user-1", "sess-1")
    assert record.session_id == "sess-1"
    assert await sessions.get("sess-1") is None
    assert await sessions.resolve("sess-1", "user-1") is None
    assert await sessions.refresh("sess-1") is False
    assert await sessions.delete_all_for_user("user-1") is None
    assert await sessions.time_left("sess-1") == 0


async def test_strict_create_raises_when_unreachable(down_kv):
    sessions = SessionStore(down_kv)
    with pytest.raises(StoreUnavailableError):
        await sessions.create("user-1", "sess-1", fail_open=False)


async def test_refresh_of_superseded_session_leaves_pointer_alone(sessions, kv):
    await sessions.create("user-1", "sess-old")
    await sessions.create("user-1", "sess-new")
    await kv.expire("session:sess-old", 20)
    await kv.expire("active_session:user-1", 20)

    assert await sessions.refresh("sess-old", force=True)
    assert await kv.ttl("session:sess-old") > 20
    assert await kv.ttl("active_session:user-1") <= 20
    assert await sessions.active_session_id("user-1") == "sess-new"
