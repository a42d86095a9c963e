"""
Event stores.

The delivery runtime keeps every accepted event and the progress of each
(event, subscription) pair in an ``EventStore``. Publishing returns once
``append`` has completed, so a store that survives restarts gives the runtime
durable acceptance. ``InMemoryEventStore`` is meant for tests and single
process development; ``RedisEventStore`` persists to Redis.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

import redis.asyncio as redis

from shared.errors import BackboneException
from shared.logging import get_logger

from .models import Delivery, DeliveryState, Event, delivery_key


class EventStore(ABC):
    """Storage interface used by the delivery runtime."""

    @abstractmethod
    async def append(self, event: Event, subscriptions: Sequence[str]) -> List[Delivery]:
        """Persist an event with one pending delivery per subscription."""

    @abstractmethod
    async def load_event(self, event_id: str) -> Optional[Event]:
        ...

    @abstractmethod
    async def save_delivery(self, delivery: Delivery) -> None:
        ...

    @abstractmethod
    async def deliveries_for(self, event_id: str) -> List[Delivery]:
        ...

    @abstractmethod
    async def unfinished_deliveries(self) -> List[Delivery]:
        """Deliveries that are neither acknowledged nor dead-lettered."""

    @abstractmethod
    async def dead_letters(self) -> List[Delivery]:
        ...

    @abstractmethod
    async def delete_event(self, event_id: str) -> None:
        """Drop an event and all of its delivery records."""

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None


class InMemoryEventStore(EventStore):
    """Process-local store."""

    def __init__(self):
        self._events: Dict[str, Event] = {}
        self._deliveries: Dict[str, Dict[str, Delivery]] = {}
        self._lock = asyncio.Lock()

    async def append(self, event: Event, subscriptions: Sequence[str]) -> List[Delivery]:
        async with self._lock:
            deliveries = [Delivery(event_id=event.id, topic=event.topic, subscription=name) for name in subscriptions]
            self._events[event.id] = event
            self._deliveries[event.id] = {d.subscription: _copy(d) for d in deliveries}
            return deliveries

    async def load_event(self, event_id: str) -> Optional[Event]:
        return self._events.get(event_id)

    async def save_delivery(self, delivery: Delivery) -> None:
        async with self._lock:
            if delivery.event_id in self._deliveries:
                self._deliveries[delivery.event_id][delivery.subscription] = _copy(delivery)

    async def deliveries_for(self, event_id: str) -> List[Delivery]:
        return [_copy(d) for d in self._deliveries.get(event_id, {}).values()]

    async def unfinished_deliveries(self) -> List[Delivery]:
        return [
            _copy(d)
            for deliveries in self._deliveries.values()
            for d in deliveries.values()
            if not d.state.terminal
        ]

    async def dead_letters(self) -> List[Delivery]:
        return [
            _copy(d)
            for deliveries in self._deliveries.values()
            for d in deliveries.values()
            if d.state is DeliveryState.DEAD_LETTERED
        ]

    async def delete_event(self, event_id: str) -> None:
        async with self._lock:
            self._events.pop(event_id, None)
            self._deliveries.pop(event_id, None)


def _copy(delivery: Delivery) -> Delivery:
    return Delivery.from_dict(delivery.to_dict())


class RedisEventStore(EventStore):
    """Redis-backed store.

    Layout, all keys under ``prefix``:
      ``{prefix}:event:{id}``       event JSON
      ``{prefix}:deliveries:{id}``  hash of subscription -> delivery JSON
      ``{prefix}:unfinished``       set of delivery keys not yet terminal
      ``{prefix}:dead``             set of dead-lettered delivery keys
    """

    def __init__(self, redis_url: str, prefix: str = "backbone", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.prefix = prefix
        self.logger = get_logger("events.store.redis")
        self.redis: Optional[redis.Redis] = client

    async def start(self) -> None:
        """Connect to Redis."""
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
            )
        try:
            await self.redis.ping()
        except redis.RedisError as e:
            self.logger.error("Failed to connect event store", error=str(e))
            raise BackboneException("EVENT_STORE_START_FAILED", str(e))
        self.logger.info("Redis event store started", prefix=self.prefix)

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.logger.info("Redis event store stopped")

    def _event_key(self, event_id: str) -> str:
        return f"{self.prefix}:event:{event_id}"

    def _deliveries_key(self, event_id: str) -> str:
        return f"{self.prefix}:deliveries:{event_id}"

    @property
    def _unfinished_key(self) -> str:
        return f"{self.prefix}:unfinished"

    @property
    def _dead_key(self) -> str:
        return f"{self.prefix}:dead"

    async def append(self, event: Event, subscriptions: Sequence[str]) -> List[Delivery]:
        deliveries = [Delivery(event_id=event.id, topic=event.topic, subscription=name) for name in subscriptions]
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._event_key(event.id), json.dumps(event.to_dict()))
            if deliveries:
                pipe.hset(
                    self._deliveries_key(event.id),
                    mapping={d.subscription: json.dumps(d.to_dict()) for d in deliveries},
                )
                pipe.sadd(self._unfinished_key, *[d.key for d in deliveries])
            await pipe.execute()
        return deliveries

    async def load_event(self, event_id: str) -> Optional[Event]:
        raw = await self.redis.get(self._event_key(event_id))
        if raw is None:
            return None
        return Event.from_dict(json.loads(raw))

    async def save_delivery(self, delivery: Delivery) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._deliveries_key(delivery.event_id), delivery.subscription, json.dumps(delivery.to_dict()))
            if delivery.state.terminal:
                pipe.srem(self._unfinished_key, delivery.key)
            else:
                pipe.sadd(self._unfinished_key, delivery.key)
            if delivery.state is DeliveryState.DEAD_LETTERED:
                pipe.sadd(self._dead_key, delivery.key)
            else:
                pipe.srem(self._dead_key, delivery.key)
            await pipe.execute()

    async def deliveries_for(self, event_id: str) -> List[Delivery]:
        records = await self.redis.hgetall(self._deliveries_key(event_id))
        return [Delivery.from_dict(json.loads(raw)) for raw in records.values()]

    async def _load_deliveries(self, keys) -> List[Delivery]:
        deliveries = []
        for key in sorted(keys):
            event_id, _, subscription = key.partition(":")
            raw = await self.redis.hget(self._deliveries_key(event_id), subscription)
            if raw is None:
                self.logger.warning("Dangling delivery key", delivery_key=key)
                continue
            deliveries.append(Delivery.from_dict(json.loads(raw)))
        return deliveries

    async def unfinished_deliveries(self) -> List[Delivery]:
        return await self._load_deliveries(await self.redis.smembers(self._unfinished_key))

    async def dead_letters(self) -> List[Delivery]:
        return await self._load_deliveries(await self.redis.smembers(self._dead_key))

    async def delete_event(self, event_id: str) -> None:
        subscriptions = await self.redis.hkeys(self._deliveries_key(event_id))
        keys = [delivery_key(event_id, name) for name in subscriptions]
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._event_key(event_id), self._deliveries_key(event_id))
            if keys:
                pipe.srem(self._unfinished_key, *keys)
                pipe.srem(self._dead_key, *keys)
            await pipe.execute()
