"""
Unit tests for the event stores.
"""

import inspect
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

from shared.errors import BackboneException
from service_events.app.models import Delivery, DeliveryState, Event
from service_events.app.store import InMemoryEventStore, RedisEventStore

def check_redis_call(name, *args, **kwargs):
    """Fail when ``name`` is called in a way redis-py's client does not accept."""
    inspect.signature(getattr(redis.Redis, name)).bind(None, *args, **kwargs)


class FakePipeline:
    """Queues the pipeline commands RedisEventStore uses and applies them on ``execute``."""

    def __init__(self, client):
        self.client = client
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.commands = []

    def _queue(self, name, *args, **kwargs):
        check_redis_call(name, *args, **kwargs)
        self.commands.append((name, args, kwargs))
        return self

    def set(self, *args, **kwargs):
        return self._queue("set", *args, **kwargs)

    def hset(self, *args, **kwargs):
        return self._queue("hset", *args, **kwargs)

    def sadd(self, *args, **kwargs):
        return self._queue("sadd", *args, **kwargs)

    def srem(self, *args, **kwargs):
        return self._queue("srem", *args, **kwargs)

    def delete(self, *args, **kwargs):
        return self._queue("delete", *args, **kwargs)

    async def execute(self):
        results = []
        for name, args, kwargs in self.commands:
            results.append(await getattr(self.client, name)(*args, **kwargs))
        self.commands = []
        return results


class FakeRedis:
    """In-memory stand-in for the redis.asyncio.Redis commands RedisEventStore uses.

    Every call is checked against the real client's signature.
    """

    def __init__(self):
        self.strings = {}
        self.hashes = {}
        self.sets = {}
        self.closed = False

    def pipeline(self, transaction=True, shard_hint=None):
        check_redis_call("pipeline", transaction=transaction, shard_hint=shard_hint)
        return FakePipeline(self)

    async def ping(self, **kwargs):
        check_redis_call("ping", **kwargs)
        return True

    async def aclose(self, close_connection_pool=None):
        self.closed = True

    async def get(self, name):
        check_redis_call("get", name)
        return self.strings.get(name)

    async def set(self, name, value, **kwargs):
        check_redis_call("set", name, value, **kwargs)
        self.strings[name] = value
        return True

    async def delete(self, *names):
        check_redis_call("delete", *names)
        removed = 0
        for name in names:
            for space in (self.strings, self.hashes, self.sets):
                if space.pop(name, None) is not None:
                    removed += 1
        return removed

    async def hset(self, name, key=None, value=None, mapping=None, items=None):
        check_redis_call("hset", name, key, value, mapping=mapping, items=items)
        bucket = self.hashes.setdefault(name, {})
        if key is not None:
            bucket[key] = value
        bucket.update(mapping or {})
        return 1

    async def hget(self, name, key):
        check_redis_call("hget", name, key)
        return self.hashes.get(name, {}).get(key)

    async def hgetall(self, name):
        check_redis_call("hgetall", name)
        return dict(self.hashes.get(name, {}))

    async def hkeys(self, name):
        check_redis_call("hkeys", name)
        return list(self.hashes.get(name, {}))

    async def sadd(self, name, *values):
        check_redis_call("sadd", name, *values)
        self.sets.setdefault(name, set()).update(values)
        return len(values)

    async def srem(self, name, *values):
        check_redis_call("srem", name, *values)
        self.sets.setdefault(name, set()).difference_update(values)
        return len(values)

    async def smembers(self, name):
        check_redis_call("smembers", name)
        return set(self.sets.get(name, set()))


@pytest.fixture(params=["memory", "redis"])
def store(request):
    if request.param == "memory":
        return InMemoryEventStore()
    return RedisEventStore("redis://unused", prefix="test", client=FakeRedis())


def make_event():
    return Event(topic="user-created", payload={"id": "u1", "email": "a@x.com"})


class TestEventStore:
    """Behaviour shared by every EventStore."""

    @pytest.mark.asyncio
    async def test_append_creates_pending_deliveries(self, store):
        """Test append persists the event with one pending delivery per subscription."""
        await store.start()
        event = make_event()

        deliveries = await store.append(event, ["a", "b"])

        assert [d.subscription for d in deliveries] == ["a", "b"]
        assert all(d.state is DeliveryState.PENDING for d in deliveries)
        loaded = await store.load_event(event.id)
        assert loaded.id == event.id
        assert loaded.payload == event.payload
        assert {d.key for d in await store.unfinished_deliveries()} == {d.key for d in deliveries}

    @pytest.mark.asyncio
    async def test_terminal_deliveries_leave_unfinished_set(self, store):
        """Test acknowledged and dead-lettered deliveries are no longer unfinished."""
        event = make_event()
        first, second = await store.append(event, ["a", "b"])

        first.transition(DeliveryState.ACKNOWLEDGED, attempts=1, total_attempts=1)
        second.transition(DeliveryState.DEAD_LETTERED, attempts=3, total_attempts=3, last_error="boom")
        await store.save_delivery(first)
        await store.save_delivery(second)

        assert await store.unfinished_deliveries() == []
        dead = await store.dead_letters()
        assert [d.subscription for d in dead] == ["b"]
        assert dead[0].last_error == "boom"
        assert dead[0].total_attempts == 3

    @pytest.mark.asyncio
    async def test_redriven_delivery_leaves_dead_letters(self, store):
        """Test a dead letter reset to pending is unfinished again."""
        event = make_event()
        (delivery,) = await store.append(event, ["a"])
        delivery.transition(DeliveryState.DEAD_LETTERED, attempts=3)
        await store.save_delivery(delivery)

        delivery.transition(DeliveryState.PENDING, attempts=0)
        await store.save_delivery(delivery)

        assert await store.dead_letters() == []
        assert [d.key for d in await store.unfinished_deliveries()] == [delivery.key]

    @pytest.mark.asyncio
    async def test_delete_event(self, store):
        """Test deleting an event drops its deliveries."""
        event = make_event()
        await store.append(event, ["a"])

        await store.delete_event(event.id)

        assert await store.load_event(event.id) is None
        assert await store.deliveries_for(event.id) == []
        assert await store.unfinished_deliveries() == []

    @pytest.mark.asyncio
    async def test_returned_deliveries_are_copies(self, store):
        """Test mutating a loaded delivery does not change the stored one."""
        event = make_event()
        await store.append(event, ["a"])

        (loaded,) = await store.deliveries_for(event.id)
        loaded.transition(DeliveryState.ACKNOWLEDGED)

        (again,) = await store.deliveries_for(event.id)
        assert again.state is DeliveryState.PENDING


class TestRedisEventStore:
    """Redis specific behaviour."""

    @pytest.mark.asyncio
    async def test_keys_are_prefixed(self):
        """Test every key lives under the configured prefix."""
        client = FakeRedis()
        store = RedisEventStore("redis://unused", prefix="svc", client=client)
        event = make_event()

        await store.append(event, ["a"])

        assert f"svc:event:{event.id}" in client.strings
        assert f"svc:deliveries:{event.id}" in client.hashes
        assert client.sets["svc:unfinished"] == {f"{event.id}:a"}

    @pytest.mark.asyncio
    async def test_start_fails_when_redis_unreachable(self):
        """Test an unreachable Redis fails start instead of accepting events."""
        client = FakeRedis()
        client.ping = AsyncMock(side_effect=redis.ConnectionError("refused"))
        store = RedisEventStore("redis://unused", client=client)

        with pytest.raises(BackboneException) as exc_info:
            await store.start()

        assert exc_info.value.code == "EVENT_STORE_START_FAILED"

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        """Test close closes the Redis client."""
        client = FakeRedis()
        store = RedisEventStore("redis://unused", client=client)

        await store.close()

        assert client.closed

    @pytest.fixture
    def pipeline(self):
        pipe = MagicMock()
        pipe.__aenter__.return_value = pipe
        pipe.__aexit__.return_value = False
        pipe.execute = AsyncMock(return_value=[])
        return pipe

    @pytest.fixture
    def client(self, pipeline):
        client = MagicMock()
        client.pipeline.return_value = pipeline
        return client

    @pytest.mark.asyncio
    async def test_save_dead_letter_commands(self, client, pipeline):
        """Test a dead letter moves from the unfinished set to the dead set in one transaction."""
        store = RedisEventStore("redis://unused", prefix="svc", client=client)
        delivery = Delivery(event_id="e1", topic="user-created", subscription="crm", state=DeliveryState.DEAD_LETTERED)

        await store.save_delivery(delivery)

        client.pipeline.assert_called_once_with(transaction=True)
        pipeline.hset.assert_called_once_with("svc:deliveries:e1", "crm", json.dumps(delivery.to_dict()))
        pipeline.srem.assert_called_once_with("svc:unfinished", "e1:crm")
        pipeline.sadd.assert_called_once_with("svc:dead", "e1:crm")
        pipeline.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_append_commands(self, client, pipeline):
        """Test append stores the event, its deliveries and the unfinished keys in one transaction."""
        store = RedisEventStore("redis://unused", prefix="svc", client=client)
        event = make_event()

        deliveries = await store.append(event, ["a", "b"])

        pipeline.set.assert_called_once_with(f"svc:event:{event.id}", json.dumps(event.to_dict()))
        pipeline.hset.assert_called_once_with(
            f"svc:deliveries:{event.id}",
            mapping={d.subscription: json.dumps(d.to_dict()) for d in deliveries},
        )
        pipeline.sadd.assert_called_once_with("svc:unfinished", f"{event.id}:a", f"{event.id}:b")
        pipeline.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delete_event_commands(self, client, pipeline):
        """Test deleting an event removes its keys and set members."""
        client.hkeys = AsyncMock(return_value=["a"])
        store = RedisEventStore("redis://unused", prefix="svc", client=client)

        await store.delete_event("e1")

        client.hkeys.assert_awaited_once_with("svc:deliveries:e1")
        pipeline.delete.assert_called_once_with("svc:event:e1", "svc:deliveries:e1")
        assert [c.args for c in pipeline.srem.call_args_list] == [("svc:unfinished", "e1:a"), ("svc:dead", "e1:a")]
        pipeline.execute.assert_awaited_once()
