from __future__ import annotations

import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chat_relay.errors import PersistenceError
from chat_relay.kv import InMemoryKeyValueStore, RedisKeyValueStore
from chat_relay.memory import ConversationStore
from chat_relay.models import ChatMessage


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _msgs(n: int):
    return [ChatMessage(role="user" if i % 2 == 0 else "assistant", content=f"m{i}") for i in range(n)]


def test_save_then_get_roundtrip():
    store = ConversationStore(InMemoryKeyValueStore())
    messages = [ChatMessage(role="system", content="sys")] + _msgs(3)

    async def run():
        await store.save("s1", messages, {"userAgent": "pytest", "ip": "1.2.3.4"})
        return await store.get("s1")

    memory = asyncio.run(run())
    assert memory is not None
    assert memory.session_id == "s1"
    assert memory.messages == messages
    assert memory.metadata == {"userAgent": "pytest", "ip": "1.2.3.4"}
    assert memory.updated_at >= memory.created_at


def test_record_layout_uses_namespaced_key_and_camel_case():
    kv = InMemoryKeyValueStore()
    store = ConversationStore(kv)
    asyncio.run(store.save("abc", _msgs(1)))

    raw = asyncio.run(kv.get("conversation:abc"))
    record = json.loads(raw)
    assert record["sessionId"] == "abc"
    assert set(record) >= {"sessionId", "messages", "createdAt", "updatedAt"}
    assert record["messages"] == [{"role": "user", "content": "m0"}]


def test_save_keeps_most_recent_messages_over_cap():
    store = ConversationStore(InMemoryKeyValueStore())
    messages = _msgs(55)
    memory = asyncio.run(store.save("s", messages))
    assert len(memory.messages) == 50
    assert memory.messages == messages[-50:]

    loaded = asyncio.run(store.get("s"))
    assert [m.content for m in loaded.messages] == [f"m{i}" for i in range(5, 55)]


def test_truncation_may_drop_system_message():
    store = ConversationStore(InMemoryKeyValueStore(), max_messages=3)
    messages = [ChatMessage(role="system", content="sys")] + _msgs(3)
    memory = asyncio.run(store.save("s", messages))
    assert all(m.role != "system" for m in memory.messages)


def test_missing_session_reads_as_none():
    store = ConversationStore(InMemoryKeyValueStore())
    assert asyncio.run(store.get("nope")) is None


def test_malformed_record_reads_as_none():
    kv = InMemoryKeyValueStore()
    store = ConversationStore(kv)
    asyncio.run(kv.put("conversation:bad", "{not json"))
    asyncio.run(kv.put("conversation:wrong", json.dumps({"messages": "nope"})))
    assert asyncio.run(store.get("bad")) is None
    assert asyncio.run(store.get("wrong")) is None


def test_record_expires_after_ttl_and_write_resets_clock():
    clock = FakeClock()
    store = ConversationStore(InMemoryKeyValueStore(clock=clock), ttl_seconds=100)

    asyncio.run(store.save("s", _msgs(1)))
    clock.now += 90
    asyncio.run(store.save("s", _msgs(2)))
    clock.now += 90
    assert asyncio.run(store.get("s")) is not None

    clock.now += 11
    assert asyncio.run(store.get("s")) is None


def test_delete_is_idempotent():
    store = ConversationStore(InMemoryKeyValueStore())

    async def run():
        await store.save("s", _msgs(2))
        await store.delete("s")
        await store.delete("s")
        await store.delete("never-existed")
        return await store.get("s")

    assert asyncio.run(run()) is None


def test_expired_entries_are_swept_on_write():
    clock = FakeClock()
    kv = InMemoryKeyValueStore(clock=clock)

    async def run():
        for i in range(100):
            await kv.put(f"k{i}", "v", 10)
        clock.now += 100
        await kv.put("fresh", "v", 10)

    asyncio.run(run())
    assert len(kv) == 1
    assert asyncio.run(kv.get("fresh")) == "v"


def test_sweep_keeps_rewritten_and_permanent_keys():
    clock = FakeClock()
    kv = InMemoryKeyValueStore(clock=clock)

    async def run():
        await kv.put("rewritten", "old", 10)
        await kv.put("forever", "v")
        clock.now += 5
        await kv.put("rewritten", "new", 10)
        clock.now += 6
        # The first deadline for "rewritten" has passed, the current one has not.
        await kv.put("other", "v", 10)
        return await kv.get("rewritten"), await kv.get("forever")

    assert asyncio.run(run()) == ("new", "v")
    assert len(kv) == 3


def test_concurrent_saves_are_last_write_wins():
    store = ConversationStore(InMemoryKeyValueStore())

    async def run():
        await asyncio.gather(
            store.save("s", [ChatMessage(role="user", content="first")]),
            store.save("s", [ChatMessage(role="user", content="second")]),
        )
        return await store.get("s")

    memory = asyncio.run(run())
    assert [m.content for m in memory.messages] == ["second"]


class FakeRedisClient:
    """Test double for the subset of ``redis.asyncio.Redis`` the store uses."""

    def __init__(self, fail: bool = False) -> None:
        self.data = {}
        self.ttls = {}
        self.fail = fail
        self.closed = False

    async def get(self, key):
        if self.fail:
            raise RedisConnectionError("down")
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttls[key] = ex

    async def delete(self, key):
        self.data.pop(key, None)

    async def aclose(self):
        self.closed = True


def test_redis_store_sets_ttl_on_every_write():
    fake = FakeRedisClient()
    store = ConversationStore(RedisKeyValueStore(fake))

    async def run():
        await store.save("s", _msgs(2))
        loaded = await store.get("s")
        await store.delete("s")
        await store.kv.close()
        return loaded

    loaded = asyncio.run(run())
    assert [m.content for m in loaded.messages] == ["m0", "m1"]
    assert fake.ttls["conversation:s"] == 604800
    assert "conversation:s" not in fake.data
    assert fake.closed


def test_redis_errors_become_persistence_errors():
    store = ConversationStore(RedisKeyValueStore(FakeRedisClient(fail=True)))
    with pytest.raises(PersistenceError):
        asyncio.run(store.get("s"))
