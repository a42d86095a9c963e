"""
Unit tests for EventBackbone wiring.
"""

import pytest

from shared.config import get_config
from shared.errors import ConfigurationError
from shared.metrics import MetricsCollector
from service_events.app.main import EventBackbone, build_store
from service_events.app.store import InMemoryEventStore, RedisEventStore
from service_events.app.topics import ALL_TOPICS, Topic, UserDeletedEvent, user_created


class TestEventBackbone:
    """Test cases for EventBackbone and store selection."""

    def test_build_memory_store(self):
        """Test the in-memory store is the default backend."""
        assert isinstance(build_store(get_config("events", 8010)), InMemoryEventStore)

    def test_build_redis_store(self):
        """Test the Redis store is configured from the settings without connecting."""
        config = get_config("events", 8010, event_store_backend="redis", event_store_prefix="test")

        store = build_store(config)

        assert isinstance(store, RedisEventStore)
        assert store.prefix == "test"
        assert store.redis is None

    def test_unknown_backend(self):
        """Test an unknown backend fails at startup."""
        with pytest.raises(ConfigurationError):
            build_store(get_config("events", 8010, event_store_backend="kinesis"))

    def test_every_topic_is_registered(self):
        """Test the runtime knows the whole topic catalogue."""
        backbone = EventBackbone(get_config("events", 8010), metrics=MetricsCollector("events"))

        assert len(backbone.runtime.registry) == len(ALL_TOPICS)
        assert "user-created" in backbone.runtime.registry

    def test_register_topic_is_idempotent(self):
        """Test registering a known topic again returns the registered instance."""
        backbone = EventBackbone(get_config("events", 8010), metrics=MetricsCollector("events"))

        assert backbone.runtime.register_topic(user_created) is user_created
        with pytest.raises(ConfigurationError):
            backbone.runtime.register_topic(Topic("user-created", UserDeletedEvent))

    @pytest.mark.asyncio
    async def test_lifecycle(self):
        """Test start and stop are tied to the context manager."""
        backbone = EventBackbone(get_config("events", 8010), metrics=MetricsCollector("events"))

        async with backbone:
            assert backbone.runtime.running is True
            await backbone.publisher("core").publish(user_created, {"id": "u1", "email": "a@x.com"})
            assert backbone.runtime.outstanding == 0

        assert backbone.runtime.running is False
