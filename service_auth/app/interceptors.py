"""
Authentication interceptors for the request pipeline.
"""

import hmac
from typing import Optional

from shared.errors import AuthenticationError
from shared.logging import get_logger, set_user_context
from shared.pipeline import Interceptor, RequestContext

from .validation.token_verifier import AuthorityMode, TokenVerifier

SESSION_COOKIE = "__session"
ADMIN_KEY_HEADER = "x-admin-api-key"


def extract_token(ctx: RequestContext) -> Optional[str]:
    """Session cookie first, then the Authorization bearer header."""
    session = ctx.cookies.get(SESSION_COOKIE)
    if session and session.strip():
        return session.strip()

    authorization = ctx.header("authorization")
    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:].strip()
        return token or None
    return None


class BearerAuthInterceptor(Interceptor):
    """Verifies the request's bearer token and stores the AuthContext on ``ctx.auth``."""

    def __init__(self, verifier: TokenVerifier, mode: AuthorityMode = AuthorityMode.ISSUER):
        self.verifier = verifier
        self.mode = mode

    async def before(self, ctx: RequestContext) -> None:
        context = await self.verifier.verify(extract_token(ctx), self.mode)
        ctx.auth = context
        set_user_context(context.subject)


class AdminKeyInterceptor(Interceptor):
    """Guards admin directives with a shared API key.

    With no key configured every request is rejected.
    """

    def __init__(self, api_key: Optional[str]):
        self.api_key = api_key
        self.logger = get_logger("auth.admin_key")

    async def before(self, ctx: RequestContext) -> None:
        if not self.api_key:
            self.logger.error("Admin API key is not configured; rejecting admin request", path=ctx.path)
            raise AuthenticationError("admin_key_unconfigured")

        presented = ctx.header(ADMIN_KEY_HEADER)
        if not presented:
            raise AuthenticationError("missing_admin_key")
        if not hmac.compare_digest(presented.encode("utf-8"), self.api_key.encode("utf-8")):
            raise AuthenticationError("invalid_admin_key")
