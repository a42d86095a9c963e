"""
Identity resolution for verified requests.

A verified subject that has no local user record is looked up at the identity
provider, created locally and announced on ``user-created``. The event is
published after the user row exists; a failed publish does not fail the
request.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Tuple

from shared.errors import ServiceError
from shared.logging import get_logger
from service_events.app.publisher import Publisher
from service_events.app.topics import user_created

from .validation.token_verifier import AuthContext, AuthorityMode, TokenVerifier

logger = get_logger("auth.identity")


@dataclass(frozen=True)
class UserProfile:
    """Profile fields the identity provider returns for a user."""

    email: Optional[str]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    last_login: Optional[datetime] = None


@dataclass(frozen=True)
class ResolvedIdentity:
    auth: AuthContext
    user: Dict[str, Any]
    created: bool = False


class UserDirectory(Protocol):
    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Return the local user record, or None."""

    async def get_or_create_user(self, user_id: str, profile: UserProfile) -> Tuple[Dict[str, Any], bool]:
        """Return ``(user, created)``; creation must be idempotent per user id."""


class IdentityProviderClient(Protocol):
    async def fetch_user_info(self, user_id: str) -> Optional[UserProfile]:
        """Fetch the user's profile from the identity provider."""


class IdentityResolver:
    """Verifies a token and maps its subject to a local user record."""

    def __init__(
        self,
        verifier: TokenVerifier,
        directory: UserDirectory,
        idp: IdentityProviderClient,
        publisher: Publisher,
        *,
        mode: AuthorityMode = AuthorityMode.ISSUER,
    ):
        self.verifier = verifier
        self.directory = directory
        self.idp = idp
        self.publisher = publisher
        self.mode = mode

    async def resolve(self, token: Optional[str]) -> ResolvedIdentity:
        auth = await self.verifier.verify(token, self.mode)
        return await self.resolve_context(auth)

    async def resolve_context(self, auth: AuthContext) -> ResolvedIdentity:
        user = await self.directory.get_user(auth.subject)
        if user is not None:
            return ResolvedIdentity(auth=auth, user=user)

        profile = await self.idp.fetch_user_info(auth.subject)
        if profile is None or not profile.email:
            logger.error("Identity provider returned no usable profile", user_id=auth.subject)
            raise ServiceError("Unable to fetch user information from identity provider")

        profile = UserProfile(
            email=profile.email,
            first_name=profile.first_name or "User",
            last_name=profile.last_name,
            last_login=profile.last_login or datetime.now(timezone.utc),
        )
        user, created = await self.directory.get_or_create_user(auth.subject, profile)

        # Another request may have created the user between the lookup and here.
        if created:
            logger.info("Created user from identity provider profile", user_id=auth.subject)
            await self.publisher.publish_after_commit(user_created, user)

        return ResolvedIdentity(auth=auth, user=user, created=created)
