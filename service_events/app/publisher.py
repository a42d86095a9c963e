"""
Publisher used by services after a local state change commits.
"""

from typing import Optional, Union

from shared.errors import PublishFailure, SchemaValidationError
from shared.logging import get_logger
from shared.observability import ObservabilitySink

from .models import Event
from .runtime import DeliveryRuntime
from .topics import Topic


class Publisher:
    """Hands payloads to the delivery runtime on behalf of one service."""

    def __init__(self, runtime: DeliveryRuntime, source: str, sink: Optional[ObservabilitySink] = None):
        self.runtime = runtime
        self.source = source
        self.sink = sink or runtime.sink
        self.logger = get_logger(f"{source}.publisher")

    async def publish(self, topic: Union[Topic, str], payload) -> Event:
        """Publish and surface every failure to the caller."""
        return await self.runtime.publish(topic, payload)

    async def publish_after_commit(self, topic: Union[Topic, str], payload) -> Optional[Event]:
        """Publish once the triggering write has committed.

        There is no transactional coupling between the write and the event, so
        neither a PublishFailure nor a payload rejected by the topic schema may
        fail the operation that already succeeded: both are logged and
        reported, and None is returned.
        """
        topic_name = topic.name if isinstance(topic, Topic) else topic
        try:
            return await self.publish(topic, payload)
        except (PublishFailure, SchemaValidationError) as e:
            self.logger.error("Event publish failed after commit", topic=topic_name, code=e.code, error=str(e))
            self.sink.capture_exception(
                e,
                tags={"operation": "publish-after-commit", "topic": topic_name, "source": self.source},
                extra=e.details,
                level="warning",
            )
            return None
