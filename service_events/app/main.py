"""
Event backbone wiring.

A service constructs one ``EventBackbone`` at startup, registers its
subscriptions on ``backbone.runtime`` and ties ``start``/``stop`` to its own
lifecycle. Nothing here is created lazily on first use.
"""

from typing import Optional

from shared.config import BaseConfig
from shared.errors import ConfigurationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.observability import ObservabilitySink
from shared.retry import RetryPolicy

from .publisher import Publisher
from .runtime import DeliveryRuntime
from .store import EventStore, InMemoryEventStore, RedisEventStore
from .topics import default_registry

logger = get_logger("events.main")


def build_store(config: BaseConfig) -> EventStore:
    """Select the event store configured by ``event_store_backend``."""
    backend = config.event_store_backend.lower()
    if backend == "memory":
        return InMemoryEventStore()
    if backend == "redis":
        return RedisEventStore(config.redis_url, prefix=config.event_store_prefix)
    raise ConfigurationError(f"Unknown event store backend '{config.event_store_backend}'")


class EventBackbone:
    """Owns the store, the topic registry and the delivery runtime."""

    def __init__(
        self,
        config: BaseConfig,
        *,
        store: Optional[EventStore] = None,
        metrics: Optional[MetricsCollector] = None,
        sink: Optional[ObservabilitySink] = None,
    ):
        self.config = config
        self.metrics = metrics or get_metrics_collector("events")
        self.sink = sink or ObservabilitySink("events", self.metrics)
        self.store = store or build_store(config)
        self.runtime = DeliveryRuntime(
            self.store,
            registry=default_registry(),
            retry_policy=RetryPolicy.from_config(config),
            concurrency=config.delivery_concurrency,
            metrics=self.metrics,
            sink=self.sink,
        )

    def publisher(self, source: str) -> Publisher:
        return Publisher(self.runtime, source, self.sink)

    async def start(self) -> None:
        await self.runtime.start()
        logger.info("Event backbone started", store=type(self.store).__name__, topics=len(self.runtime.registry))

    async def stop(self) -> None:
        await self.runtime.stop()

    async def __aenter__(self) -> "EventBackbone":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
