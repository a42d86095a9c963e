"""
Delivery runtime.

Accepts published events, persists them through an ``EventStore`` and invokes
every subscription bound to the event's topic at least once.

Per (event, subscription) the delivery moves through::

    PENDING -> DELIVERING -> ACKNOWLEDGED
                          -> RETRY_SCHEDULED -> DELIVERING ...
                          -> DEAD_LETTERED

Each subscription owns a queue and its own workers, so a failing or slow
subscriber never holds back another one. A delivery key is tracked while it
is queued, being handled or waiting for its backoff timer, which keeps
attempts of one delivery strictly sequential.
"""

import asyncio
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple, Union

from shared.errors import (
    BackboneException,
    DuplicateSubscriptionError,
    PublishFailure,
    SchemaValidationError,
)
from shared.logging import delivery_context, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.observability import ObservabilitySink
from shared.retry import RetryPolicy
from shared.tracing import get_tracer, trace_operation

from .models import Delivery, DeliveryState, Event
from .outcomes import (
    Outcome,
    OutcomeKind,
    PermanentFailure,
    classify_exception,
    coerce_outcome,
)
from .store import EventStore, InMemoryEventStore
from .subscription import Subscription
from .topics import Topic, TopicRegistry

QueueKey = Tuple[str, str]

tracer = get_tracer("events.runtime")


class DeliveryRuntime:
    """At-least-once delivery with bounded retries and dead-lettering."""

    def __init__(
        self,
        store: Optional[EventStore] = None,
        *,
        registry: Optional[TopicRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = 1,
        metrics: Optional[MetricsCollector] = None,
        sink: Optional[ObservabilitySink] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store or InMemoryEventStore()
        self.registry = registry or TopicRegistry()
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = concurrency
        self.metrics = metrics or get_metrics_collector("events")
        self.sink = sink or ObservabilitySink("events", self.metrics)
        self.logger = get_logger("events.runtime")

        self._subscriptions: Dict[str, Dict[str, Subscription]] = defaultdict(dict)
        self._queues: Dict[QueueKey, asyncio.Queue] = {}
        self._workers: List[asyncio.Task] = []
        self._retry_tasks: Set[asyncio.Task] = set()
        self._tracked: Set[str] = set()
        self._store_failures: Dict[str, int] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self.running = False

    # Wiring

    def register_topic(self, topic: Topic) -> Topic:
        return self.registry.register(topic)

    def subscribe(self, subscription: Subscription) -> Subscription:
        """Bind a subscription. Allowed before or after ``start``."""
        topic_name = subscription.topic_name
        self.registry.register(subscription.topic)
        if subscription.name in self._subscriptions[topic_name]:
            raise DuplicateSubscriptionError(topic_name, subscription.name)

        self._subscriptions[topic_name][subscription.name] = subscription
        queue_key = (topic_name, subscription.name)
        self._queues[queue_key] = asyncio.Queue()
        if self.running:
            self._spawn_workers(subscription)

        self.logger.info("Subscription registered", topic=topic_name, subscription=subscription.name)
        return subscription

    def subscriptions(self, topic: Union[Topic, str]) -> List[Subscription]:
        topic_name = topic.name if isinstance(topic, Topic) else topic
        return list(self._subscriptions.get(topic_name, {}).values())

    # Lifecycle

    async def start(self) -> None:
        """Connect the store, resume unfinished deliveries and start workers."""
        if self.running:
            return
        await self.store.start()
        self.running = True

        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions.values():
                self._spawn_workers(subscription)

        recovered = 0
        for delivery in await self.store.unfinished_deliveries():
            if self._subscription_for(delivery) is None:
                self.logger.warning(
                    "Unfinished delivery has no live subscription",
                    topic=delivery.topic,
                    subscription=delivery.subscription,
                    event_id=delivery.event_id,
                )
                continue
            if self._enqueue(delivery):
                recovered += 1

        self.logger.info("Delivery runtime started", recovered_deliveries=recovered, workers=len(self._workers))

    async def stop(self) -> None:
        """Stop workers and pending retry timers.

        Deliveries that were in flight stay unfinished in the store and are
        resumed by the next ``start``.
        """
        if not self.running:
            return
        self.running = False

        tasks = self._workers + list(self._retry_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._workers = []
        self._retry_tasks.clear()
        self._tracked.clear()
        self._store_failures.clear()
        for key in list(self._queues):
            self._queues[key] = asyncio.Queue()
        self._idle.set()

        await self.store.close()
        self.logger.info("Delivery runtime stopped")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every delivery known to this process is acknowledged or dead-lettered."""
        await asyncio.wait_for(self._idle.wait(), timeout)

    @property
    def outstanding(self) -> int:
        return len(self._tracked)

    # Publishing

    async def publish(self, topic: Union[Topic, str], payload) -> Event:
        """Durably accept an event; delivery happens asynchronously.

        Raises SchemaValidationError when the payload does not match the topic
        schema and PublishFailure when the store cannot accept the event.
        """
        topic = self._resolve_topic(topic)
        data = topic.serialize(payload)
        event = Event(topic=topic.name, payload=data)
        subscription_names = list(self._subscriptions.get(topic.name, {}))

        try:
            deliveries = await self.store.append(event, subscription_names)
        except Exception as e:
            self.metrics.increment_counter("publish_failures_total", topic=topic.name)
            self.sink.capture_exception(
                e,
                tags={"operation": "event-publish", "topic": topic.name},
                extra={"event_id": event.id},
            )
            raise PublishFailure(topic.name, details={"error": str(e)}) from e

        self.metrics.increment_counter("events_published_total", topic=topic.name)
        self.logger.debug("Event accepted", topic=topic.name, event_id=event.id, subscriptions=len(deliveries))

        if not deliveries:
            try:
                await self._release_event(event.id)
            except Exception as e:
                # Accepted already; an unreleased event without deliveries is only garbage.
                self.sink.capture_exception(
                    e,
                    tags={"operation": "event-release", "topic": topic.name},
                    extra={"event_id": event.id},
                    level="warning",
                )
        for delivery in deliveries:
            self._enqueue(delivery)
        return event

    def _resolve_topic(self, topic: Union[Topic, str]) -> Topic:
        if isinstance(topic, Topic):
            return self.registry.register(topic)
        return self.registry.get(topic)

    # Dead letters

    async def dead_letters(self) -> List[Delivery]:
        return await self.store.dead_letters()

    async def redeliver(self, event_id: str, subscription_name: str) -> Delivery:
        """Give a dead-lettered delivery a fresh attempt budget."""
        for delivery in await self.store.deliveries_for(event_id):
            if delivery.subscription != subscription_name:
                continue
            if delivery.state is not DeliveryState.DEAD_LETTERED:
                raise BackboneException(
                    "NOT_DEAD_LETTERED",
                    "Only dead-lettered deliveries can be redelivered",
                    {"event_id": event_id, "subscription": subscription_name, "state": delivery.state.value},
                )
            if self._subscription_for(delivery) is None:
                raise BackboneException(
                    "NO_LIVE_SUBSCRIPTION",
                    "Subscription is not registered in this runtime",
                    {"event_id": event_id, "subscription": subscription_name},
                )
            delivery.transition(DeliveryState.PENDING, attempts=0, last_outcome=None, last_error=None)
            await self.store.save_delivery(delivery)
            self._enqueue(delivery)
            self.logger.info("Dead letter redelivered", event_id=event_id, subscription=subscription_name)
            return delivery

        raise BackboneException(
            "DELIVERY_NOT_FOUND",
            "No delivery for this event and subscription",
            {"event_id": event_id, "subscription": subscription_name},
        )

    # Delivery

    def _subscription_for(self, delivery: Delivery) -> Optional[Subscription]:
        return self._subscriptions.get(delivery.topic, {}).get(delivery.subscription)

    def _enqueue(self, delivery: Delivery) -> bool:
        if delivery.key in self._tracked:
            return False
        self._tracked.add(delivery.key)
        self._idle.clear()
        self._queues[(delivery.topic, delivery.subscription)].put_nowait(delivery)
        return True

    def _untrack(self, delivery: Delivery) -> None:
        self._tracked.discard(delivery.key)
        if not self._tracked:
            self._idle.set()

    def _spawn_workers(self, subscription: Subscription) -> None:
        queue = self._queues[(subscription.topic_name, subscription.name)]
        for _ in range(self.concurrency):
            self._workers.append(asyncio.create_task(self._worker(subscription, queue)))

    async def _worker(self, subscription: Subscription, queue: asyncio.Queue) -> None:
        while True:
            delivery = await queue.get()
            try:
                settled = await self._attempt(subscription, delivery)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._store_unavailable(subscription, delivery, e)
                settled = False
            finally:
                queue.task_done()
            if settled:
                self._store_failures.pop(delivery.key, None)
                self._untrack(delivery)

    def _store_unavailable(self, subscription: Subscription, delivery: Delivery, error: Exception) -> None:
        """Back off and retry a delivery whose progress could not be read or recorded.

        The delivery stays tracked. Its in-memory state is whatever was last
        decided, so the next pass either persists that decision or runs the
        attempt again.
        """
        failures = self._store_failures.get(delivery.key, 0) + 1
        self._store_failures[delivery.key] = failures
        delay = self.retry_policy.delay_for(failures)

        self.sink.capture_exception(
            error,
            tags={
                "operation": "event-delivery",
                "topic": subscription.topic_name,
                "subscription": subscription.name,
                "store_unavailable": True,
            },
            extra={"event_id": delivery.event_id, "attempt": delivery.attempts, "store_failures": failures},
            level="warning",
        )
        self.logger.warning(
            "Event store unavailable, delivery requeued",
            event_id=delivery.event_id,
            subscription=subscription.name,
            state=delivery.state.value,
            delay=round(delay, 3),
        )
        self._requeue_later(subscription, delivery, delay)

    async def _attempt(self, subscription: Subscription, delivery: Delivery) -> bool:
        """Run one attempt. Returns False when a retry has been scheduled."""
        if delivery.state.terminal:
            # Decided earlier but not yet persisted.
            await self._persist_terminal(delivery)
            return True

        event = await self.store.load_event(delivery.event_id)
        if event is None:
            await self._dead_letter(delivery, PermanentFailure(reason="event missing"))
            return True

        previous = (delivery.state, delivery.attempts, delivery.total_attempts)
        delivery.transition(
            DeliveryState.DELIVERING,
            attempts=delivery.attempts + 1,
            total_attempts=delivery.total_attempts + 1,
        )
        try:
            await self.store.save_delivery(delivery)
        except Exception:
            # The handler never ran; the attempt does not count.
            state, attempts, total_attempts = previous
            delivery.transition(state, attempts=attempts, total_attempts=total_attempts)
            raise

        with delivery_context(event.topic, subscription.name, delivery.attempts), trace_operation(
            tracer,
            "event.deliver",
            topic=event.topic,
            subscription=subscription.name,
            event_id=event.id,
            attempt=delivery.attempts,
        ):
            with self.metrics.time_operation(
                "delivery_duration_seconds", topic=event.topic, subscription=subscription.name
            ):
                outcome = await self._invoke(subscription, event)

            self.metrics.increment_counter(
                "deliveries_total", topic=event.topic, subscription=subscription.name, outcome=outcome.kind.value
            )

            if outcome.kind is OutcomeKind.SUCCESS:
                delivery.transition(DeliveryState.ACKNOWLEDGED, last_outcome=outcome.kind.value, last_error=None)
                await self._persist_terminal(delivery)
                return True

            if outcome.kind is OutcomeKind.PERMANENT_FAILURE or self.retry_policy.exhausted(delivery.attempts):
                await self._dead_letter(delivery, outcome)
                return True

            await self._schedule_retry(subscription, delivery, outcome)
            return False

    async def _invoke(self, subscription: Subscription, event: Event) -> Outcome:
        try:
            payload = subscription.topic.validate(event.payload)
        except SchemaValidationError as e:
            return PermanentFailure(reason="malformed payload", error=e)

        try:
            result = await subscription.invoke(payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return classify_exception(e)

        try:
            return coerce_outcome(result)
        except TypeError as e:
            return PermanentFailure(reason=str(e), error=e)

    async def _schedule_retry(self, subscription: Subscription, delivery: Delivery, outcome: Outcome) -> None:
        delay = self.retry_policy.delay_for(delivery.attempts)
        delivery.transition(DeliveryState.RETRY_SCHEDULED, last_outcome=outcome.kind.value, last_error=outcome.reason)
        await self.store.save_delivery(delivery)

        self.logger.warning(
            "Delivery failed, retry scheduled",
            event_id=delivery.event_id,
            max_attempts=self.retry_policy.max_attempts,
            delay=round(delay, 3),
            error=outcome.reason,
        )
        if outcome.error is not None:
            self.sink.capture_exception(
                outcome.error,
                tags={"operation": "event-delivery", "topic": delivery.topic, "subscription": subscription.name},
                extra={"event_id": delivery.event_id, "attempt": delivery.attempts},
                level="warning",
            )

        self._requeue_later(subscription, delivery, delay)

    def _requeue_later(self, subscription: Subscription, delivery: Delivery, delay: float) -> None:
        queue = self._queues[(subscription.topic_name, subscription.name)]
        task = asyncio.create_task(self._requeue_after(delay, queue, delivery))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    @staticmethod
    async def _requeue_after(delay: float, queue: asyncio.Queue, delivery: Delivery) -> None:
        await asyncio.sleep(delay)
        queue.put_nowait(delivery)

    async def _dead_letter(self, delivery: Delivery, outcome: Outcome) -> None:
        delivery.transition(DeliveryState.DEAD_LETTERED, last_outcome=outcome.kind.value, last_error=outcome.reason)
        await self._persist_terminal(delivery, outcome.error)

    async def _persist_terminal(self, delivery: Delivery, error: Optional[BaseException] = None) -> None:
        """Record an acknowledged or dead-lettered delivery and act on it."""
        await self.store.save_delivery(delivery)

        if delivery.state is DeliveryState.ACKNOWLEDGED:
            self.logger.info("Delivery acknowledged", event_id=delivery.event_id)
            await self._release_event(delivery.event_id)
            return

        self.metrics.increment_counter("dead_letters_total", topic=delivery.topic, subscription=delivery.subscription)
        self.sink.capture_exception(
            error or BackboneException("DEAD_LETTERED", delivery.last_error or "delivery dead-lettered"),
            tags={
                "operation": "event-delivery",
                "topic": delivery.topic,
                "subscription": delivery.subscription,
                "dead_lettered": True,
            },
            extra={"event_id": delivery.event_id, "attempt": delivery.attempts, "outcome": delivery.last_outcome},
        )
        self.logger.error(
            "Delivery dead-lettered",
            event_id=delivery.event_id,
            outcome=delivery.last_outcome,
            error=delivery.last_error,
        )

    async def _release_event(self, event_id: str) -> None:
        """Drop the event once every delivery is acknowledged; keep it if any was dead-lettered."""
        deliveries = await self.store.deliveries_for(event_id)
        if all(d.state is DeliveryState.ACKNOWLEDGED for d in deliveries):
            await self.store.delete_event(event_id)
