"""
Subscriptions bind a durable consumer name to one handler on one topic.
"""

import asyncio
import functools
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from shared.errors import ConfigurationError

from .outcomes import Outcome
from .topics import Topic

Handler = Callable[[Any], Union[Outcome, None, Awaitable[Union[Outcome, None]]]]


@dataclass(frozen=True)
class Subscription:
    """(topic, consumer name) is the identity used to track delivery progress.

    Renaming the consumer makes the runtime treat it as a new subscriber with
    no delivery history, so names must stay stable across deployments.
    Handlers must be idempotent: delivery is at-least-once.
    """

    topic: Topic
    name: str
    handler: Handler

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Subscription name must not be empty", {"topic": self.topic.name})
        if not callable(self.handler):
            raise ConfigurationError("Subscription handler must be callable", {"subscription": self.name})

    @property
    def topic_name(self) -> str:
        return self.topic.name

    async def invoke(self, payload: Any) -> Any:
        """Run the handler; synchronous handlers run in the default executor."""
        if inspect.iscoroutinefunction(self.handler):
            return await self.handler(payload)
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, functools.partial(self.handler, payload))
        if inspect.isawaitable(result):
            return await result
        return result


def subscribe(topic: Topic, name: str):
    """Decorator form: ``@subscribe(user_created, "remove-user-from-waitlist")``."""

    def decorator(handler: Handler) -> Subscription:
        return Subscription(topic=topic, name=name, handler=handler)

    return decorator
