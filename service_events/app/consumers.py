"""
Idempotent consumers of identity events.

Storage is reached through narrow repository interfaces so that these handlers
can be bound to whatever persistence a service uses. Every handler is safe to
run more than once for the same event: a record that is already gone, or
already created, is a successful no-op.
"""

from typing import List, Optional, Protocol

from shared.errors import NotFoundError
from shared.logging import get_logger

from .outcomes import Outcome, Success
from .runtime import DeliveryRuntime
from .subscription import Subscription
from .topics import UserCreatedEvent, UserDeletedEvent, user_created, user_deleted

logger = get_logger("events.consumers")


class WaitlistRepository(Protocol):
    async def remove_by_email(self, email: str) -> bool:
        """Delete the entry for ``email``; False when there was none."""


class IdentityRepository(Protocol):
    async def delete_user(self, user_id: str) -> None:
        """Delete the user; raises NotFoundError when absent."""


class ResumeRepository(Protocol):
    async def find_base_resume(self, user_id: str) -> Optional[str]:
        """Return the id of the user's base resume, if any."""

    async def create_base_resume(self, user_id: str) -> str:
        """Create an empty base resume and return its id."""


def remove_user_from_waitlist(waitlist: WaitlistRepository) -> Subscription:
    """user-created -> drop the new user's email from the waitlist."""

    async def handle(event: UserCreatedEvent) -> Outcome:
        removed = await waitlist.remove_by_email(event.email)
        if not removed:
            logger.info("Waitlist entry already absent", user_id=event.id)
            return Success(note="not on waitlist")
        logger.info("Removed user from waitlist", user_id=event.id)
        return Success()

    return Subscription(user_created, "remove-user-from-waitlist", handle)


def delete_user_identity(identities: IdentityRepository) -> Subscription:
    """user-deleted -> delete the identity record."""

    async def handle(event: UserDeletedEvent) -> Outcome:
        try:
            await identities.delete_user(event.user_id)
        except NotFoundError:
            logger.warning("User identity already deleted or not found", user_id=event.user_id)
            return Success(note="already deleted")

        logger.info("Deleted user identity", user_id=event.user_id, source=event.source)
        return Success()

    return Subscription(user_deleted, "delete-user-identity", handle)


def create_base_resume(resumes: ResumeRepository) -> Subscription:
    """user-created -> make sure the user has an empty base resume."""

    async def handle(event: UserCreatedEvent) -> Outcome:
        existing = await resumes.find_base_resume(event.id)
        if existing is not None:
            logger.info("Base resume already exists", user_id=event.id, resume_id=existing)
            return Success(note="already exists")

        resume_id = await resumes.create_base_resume(event.id)
        logger.info("Base resume created for new user", user_id=event.id, resume_id=resume_id)
        return Success()

    return Subscription(user_created, "create-base-resume", handle)


def register_consumers(
    runtime: DeliveryRuntime,
    *,
    waitlist: Optional[WaitlistRepository] = None,
    identities: Optional[IdentityRepository] = None,
    resumes: Optional[ResumeRepository] = None,
) -> List[Subscription]:
    """Bind the consumers whose repositories were provided."""
    subscriptions = []
    if waitlist is not None:
        subscriptions.append(remove_user_from_waitlist(waitlist))
    if identities is not None:
        subscriptions.append(delete_user_identity(identities))
    if resumes is not None:
        subscriptions.append(create_base_resume(resumes))
    for subscription in subscriptions:
        runtime.subscribe(subscription)
    return subscriptions
