"""Tests for the key-value store adapter: TTL ops, sets, pipelines and fail-open defaults."""

import pytest

from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.kv import RAISE


async def test_set_get_and_ttl(kv):
    assert await kv.set_with_ttl("session:abc", "payload", 60)
    assert await kv.get("session:abc") == "payload"
    remaining = await kv.ttl("session:abc")
    assert 0 < remaining <= 60
    assert await kv.ttl("session:missing") == -2


async def test_increment_creates_at_one(kv):
    assert await kv.increment("failed_attempts:x") == 1
    assert await kv.increment("failed_attempts:x") == 2


async def test_delete_multiple_keys(kv):
    await kv.set_with_ttl("a:1", "x", 60)
    await kv.set_with_ttl("a:2", "y", 60)
    assert await kv.delete("a:1", "a:2", "a:3") == 2
    assert await kv.delete() == 0
    assert await kv.get("a:1") is None


async def test_expire_rearms_ttl(kv):
    await kv.set_with_ttl("k:1", "v", 5)
    assert await kv.expire("k:1", 120)
    assert await kv.ttl("k:1") > 5
    assert not await kv.expire("k:missing", 120)


async def test_set_operations(kv):
    await kv.add_to_set("tokens:u1", "t1")
    await kv.add_to_set("tokens:u1", "t2")
    assert await kv.members_of("tokens:u1") == {"t1", "t2"}
    await kv.remove_from_set("tokens:u1", "t1")
    assert await kv.members_of("tokens:u1") == {"t2"}
    assert await kv.members_of("tokens:none") == set()


async def test_pipeline_runs_ops_in_order(kv):
    results = await kv.pipeline(
        [
            ("set", "p:1", "one", 30),
            ("incr", "p:count"),
            ("incr", "p:count"),
            ("sadd", "p:set", "m"),
            ("expire", "p:set", 30),
            ("get", "p:1"),
        ]
    )
    assert results[1:3] == [1, 2]
    assert results[-1] == "one"
    assert 0 < await kv.ttl("p:set") <= 30


async def test_pipeline_rejects_unknown_commands(kv):
    with pytest.raises(ValueError):
        await kv.pipeline([("flushall",)])
    assert await kv.pipeline([]) == []


async def test_readiness_tracks_last_call(kv):
    assert not kv.is_ready()
    assert await kv.ensure_connection()
    assert kv.is_ready()


async def test_unreachable_store_raises_without_default(down_kv):
    with pytest.raises(StoreUnavailableError) as exc_info:
        await down_kv.get("session:abc")
    assert exc_info.value.op == "get"
    assert not down_kv.is_ready()


async def test_unreachable_store_returns_supplied_default(down_kv):
    assert await down_kv.get("session:abc", default=None) is None
    assert await down_kv.increment("failed_attempts:x", default=1) == 1
    assert await down_kv.members_of("tokens:u", default=None) == set()
    assert await down_kv.pipeline([("get", "a")], default=None) is None
    assert await down_kv.ensure_connection() is False


def test_raise_sentinel_repr():
    assert repr(RAISE) == "RAISE"
