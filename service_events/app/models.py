"""
Event and delivery records.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryState(str, Enum):
    PENDING = "pending"
    DELIVERING = "delivering"
    RETRY_SCHEDULED = "retry_scheduled"
    ACKNOWLEDGED = "acknowledged"
    DEAD_LETTERED = "dead_lettered"

    @property
    def terminal(self) -> bool:
        return self in (DeliveryState.ACKNOWLEDGED, DeliveryState.DEAD_LETTERED)


@dataclass(frozen=True)
class Event:
    """A published payload. The payload is stored in its JSON form."""

    topic: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "topic": self.topic,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        return cls(
            id=data["id"],
            topic=data["topic"],
            payload=data["payload"],
            enqueued_at=datetime.fromisoformat(data["enqueued_at"]),
        )


@dataclass
class Delivery:
    """Progress of one event towards one subscription.

    ``attempts`` counts invocations within the current attempt budget and is
    reset only by an explicit redrive; ``total_attempts`` never decreases.
    """

    event_id: str
    topic: str
    subscription: str
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = 0
    total_attempts: int = 0
    last_outcome: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return delivery_key(self.event_id, self.subscription)

    def transition(self, state: DeliveryState, **changes: Any) -> None:
        self.state = state
        for name, value in changes.items():
            setattr(self, name, value)
        self.updated_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Delivery":
        data = dict(data)
        data["state"] = DeliveryState(data["state"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        return cls(**data)


def delivery_key(event_id: str, subscription: str) -> str:
    return f"{event_id}:{subscription}"
