"""
Topics and their payload schemas.

A topic is created once at startup and never changes afterwards. Its payload
schema is a pydantic model; publishing validates the payload against it and
handlers receive a parsed instance of it.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, Iterator, List, Literal, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from shared.errors import ConfigurationError, SchemaValidationError, UnknownTopicError

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class DeliveryGuarantee(str, Enum):
    AT_LEAST_ONCE = "at-least-once"


class Topic(Generic[PayloadT]):
    """A named, typed channel."""

    def __init__(
        self,
        name: str,
        schema: Type[PayloadT],
        delivery_guarantee: DeliveryGuarantee = DeliveryGuarantee.AT_LEAST_ONCE,
    ):
        if not name:
            raise ConfigurationError("Topic name must not be empty")
        object.__setattr__(self, "_name", name)
        object.__setattr__(self, "_schema", schema)
        object.__setattr__(self, "_delivery_guarantee", DeliveryGuarantee(delivery_guarantee))

    def __setattr__(self, key, value):
        raise AttributeError("Topic is immutable")

    @property
    def name(self) -> str:
        return self._name

    @property
    def schema(self) -> Type[PayloadT]:
        return self._schema

    @property
    def delivery_guarantee(self) -> DeliveryGuarantee:
        return self._delivery_guarantee

    def validate(self, payload: Union[PayloadT, Mapping[str, Any]]) -> PayloadT:
        """Return ``payload`` as an instance of the schema or raise SchemaValidationError."""
        if isinstance(payload, self._schema):
            return payload
        if isinstance(payload, BaseModel):
            payload = payload.model_dump()
        try:
            return self._schema.model_validate(payload)
        except ValidationError as exc:
            raise SchemaValidationError(self._name, _error_list(exc)) from exc

    def serialize(self, payload: Union[PayloadT, Mapping[str, Any]]) -> Dict[str, Any]:
        """Validate and convert to a JSON-compatible dict for storage."""
        return self.validate(payload).model_dump(mode="json")

    def __repr__(self) -> str:
        return f"Topic({self._name!r}, {self._schema.__name__})"


def _error_list(exc: ValidationError) -> List[Dict[str, Any]]:
    return [
        {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]


class TopicRegistry:
    """Process-wide set of topics, keyed by unique name."""

    def __init__(self, topics: Optional[List[Topic]] = None):
        self._topics: Dict[str, Topic] = {}
        for topic in topics or []:
            self.register(topic)

    def register(self, topic: Topic) -> Topic:
        existing = self._topics.get(topic.name)
        if existing is not None and existing is not topic:
            raise ConfigurationError(f"Topic '{topic.name}' is already registered", {"topic": topic.name})
        self._topics[topic.name] = topic
        return topic

    def get(self, name: str) -> Topic:
        try:
            return self._topics[name]
        except KeyError:
            raise UnknownTopicError(name) from None

    def __contains__(self, name: str) -> bool:
        return name in self._topics

    def __iter__(self) -> Iterator[Topic]:
        return iter(self._topics.values())

    def __len__(self) -> int:
        return len(self._topics)


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


# Identity


class UserCreatedEvent(BaseModel):
    """A full user record; fields beyond the required ones are carried through."""

    model_config = ConfigDict(extra="allow")

    id: str
    email: str
    first_name: str = "User"
    last_name: Optional[str] = None
    is_active: bool = True
    is_staff: bool = False
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserDeletedEvent(EventPayload):
    user_id: str
    user_email: Optional[str] = None
    deleted_at: datetime
    source: Literal["clerk", "manual"]


# Waitlist


class WaitlistSubmittedEvent(EventPayload):
    email: str
    referrer: Optional[str] = None
    submitted_at: datetime


class WaitlistLoopsSyncTriggeredEvent(EventPayload):
    triggered_at: datetime


class WaitlistAccessGrantedEvent(EventPayload):
    email: str
    granted_at: datetime


# Jobs


class JobScrapeTriggeredEvent(EventPayload):
    job_id: str
    process_id: str
    job_url: Optional[str] = None
    description: Optional[str] = None
    triggered_at: datetime


class JobScrapeSuccessEvent(EventPayload):
    job_id: str
    process_id: str
    job_url: Optional[str] = None
    completed_at: datetime


class JobScrapeFailedEvent(EventPayload):
    job_id: str
    process_id: str
    error_message: str
    failed_at: datetime


# Feedback


class UserFeedbackSubmittedEvent(EventPayload):
    user_id: str
    user_email: str
    user_name: str
    subject: str
    message: str
    submitted_at: datetime


# Resumes

ResumeChangeType = Literal[
    "section_added",
    "section_removed",
    "section_updated",
    "section_reordered",
    "bulk_replace",
    "resume_deleted",
    "thumbnail_updated",
]

ResumeSectionType = Literal["Education", "Experience", "Skill", "Project", "Certification"]


class ResumeUpdatedEvent(EventPayload):
    resume_id: str
    user_id: str
    change_type: ResumeChangeType
    section_type: Optional[ResumeSectionType] = None
    section_id: Optional[str] = None
    changed_fields: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None


class ThumbnailGenerationTriggeredEvent(EventPayload):
    resume_id: str
    user_id: str
    reason: str
    change_score: float
    timestamp: datetime


class ResumeTailoringTriggeredEvent(EventPayload):
    resume_id: str
    job_id: str
    process_id: str
    user_id: str
    job_url: Optional[str] = None
    triggered_at: datetime


class ResumeTailoringSuccessEvent(EventPayload):
    resume_id: str
    job_id: str
    process_id: str
    user_id: str
    completed_at: datetime


class ResumeTailoringFailedEvent(EventPayload):
    resume_id: str
    job_id: str
    process_id: str
    user_id: str
    error_message: str
    failed_at: datetime


user_created = Topic("user-created", UserCreatedEvent)
user_deleted = Topic("user-deleted", UserDeletedEvent)
waitlist_submitted = Topic("waitlist-submitted", WaitlistSubmittedEvent)
waitlist_loops_sync_triggered = Topic("waitlist-loops-sync-triggered", WaitlistLoopsSyncTriggeredEvent)
waitlist_access_granted = Topic("waitlist-access-granted", WaitlistAccessGrantedEvent)
job_scrape_triggered = Topic("job-scrape-triggered", JobScrapeTriggeredEvent)
job_scrape_success = Topic("job-scrape-success", JobScrapeSuccessEvent)
job_scrape_failed = Topic("job-scrape-failed", JobScrapeFailedEvent)
user_feedback_submitted = Topic("user-feedback-submitted", UserFeedbackSubmittedEvent)
resume_updated = Topic("resume-updated", ResumeUpdatedEvent)
thumbnail_generation_triggered = Topic("thumbnail-generation-triggered", ThumbnailGenerationTriggeredEvent)
resume_tailoring_triggered = Topic("resume-tailoring-triggered", ResumeTailoringTriggeredEvent)
resume_tailoring_success = Topic("resume-tailoring-success", ResumeTailoringSuccessEvent)
resume_tailoring_failed = Topic("resume-tailoring-failed", ResumeTailoringFailedEvent)

ALL_TOPICS: List[Topic] = [
    user_created,
    user_deleted,
    waitlist_submitted,
    waitlist_loops_sync_triggered,
    waitlist_access_granted,
    job_scrape_triggered,
    job_scrape_success,
    job_scrape_failed,
    user_feedback_submitted,
    resume_updated,
    thumbnail_generation_triggered,
    resume_tailoring_triggered,
    resume_tailoring_success,
    resume_tailoring_failed,
]


def default_registry() -> TopicRegistry:
    """A registry holding every topic the services exchange."""
    return TopicRegistry(ALL_TOPICS)
