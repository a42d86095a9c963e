"""
Bearer token verification against remotely published key sets.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple
from urllib.parse import urlparse

from jose import jwk, jwt
from jose.exceptions import ExpiredSignatureError, JOSEError

from shared.errors import AuthenticationError, KeySetFetchError
from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.tracing import get_tracer, trace_operation

from ..jwks.cache import KeySetCache
from ..jwks.models import JsonWebKey

tracer = get_tracer("auth.verifier")


class AuthorityMode(str, Enum):
    """Where the key set for a token is fetched from."""

    ISSUER = "issuer"
    FRONTEND = "frontend"


@dataclass(frozen=True)
class AuthContext:
    """Verified identity for the lifetime of one request."""

    subject: str
    issuer: str
    claims: Dict[str, Any]


class TokenVerifier:
    """Validates signed bearer tokens.

    Every rejection raises ``AuthenticationError`` with a generic message;
    the specific reason is only logged.
    """

    def __init__(
        self,
        cache: KeySetCache,
        *,
        frontend_authority_url: Optional[str] = None,
        allowed_issuers: Iterable[str] = (),
        algorithms: Iterable[str] = ("RS256",),
        leeway: int = 0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.cache = cache
        self.frontend_authority_url = frontend_authority_url
        self.allowed_issuers = frozenset(issuer.rstrip("/") for issuer in allowed_issuers)
        self.algorithms = tuple(algorithms)
        self.leeway = leeway
        self.metrics = metrics or cache.metrics or get_metrics_collector("auth")
        self.logger = get_logger("auth.verifier")

    @classmethod
    def from_config(cls, cache: KeySetCache, config, metrics: Optional[MetricsCollector] = None) -> "TokenVerifier":
        return cls(
            cache,
            frontend_authority_url=config.frontend_authority_url,
            allowed_issuers=config.allowed_issuers,
            algorithms=config.token_algorithms,
            leeway=config.token_leeway,
            metrics=metrics,
        )

    async def verify(self, token: Optional[str], mode: AuthorityMode = AuthorityMode.ISSUER) -> AuthContext:
        """Verify ``token`` and return its AuthContext."""
        try:
            with trace_operation(tracer, "token.verify", mode=mode.value):
                context = await self._verify(token, mode)
        except AuthenticationError as e:
            self.metrics.increment_counter("token_verifications_total", status="rejected")
            self.logger.info("Token rejected", reason=e.reason, mode=mode.value, **e.internal_details)
            raise

        self.metrics.increment_counter("token_verifications_total", status="ok")
        return context

    async def _verify(self, token: Optional[str], mode: AuthorityMode) -> AuthContext:
        if not token or not token.strip():
            raise AuthenticationError("missing_token")
        token = token.strip()

        header, unverified_claims = self._parse_unverified(token)
        kid = header.get("kid")
        alg = header.get("alg")
        if not isinstance(kid, str) or not kid:
            raise AuthenticationError("missing_kid")
        if alg not in self.algorithms:
            raise AuthenticationError("algorithm_not_allowed", {"alg": alg})

        issuer = self._check_issuer(unverified_claims.get("iss"))
        authority_url = self._resolve_authority(issuer, mode)

        try:
            key_set = await self.cache.get(authority_url)
        except KeySetFetchError as e:
            raise AuthenticationError(
                "key_set_unavailable",
                {"authority_url": authority_url, "error_type": type(e).__name__},
            ) from e

        key = key_set.find(kid)
        if key is None or not self._key_matches(key, alg):
            raise AuthenticationError("no_matching_key", {"kid": kid, "authority_url": authority_url})

        self._construct_key(key, alg)
        claims = self._decode(token, key, alg, issuer)

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthenticationError("missing_subject")

        return AuthContext(subject=subject, issuer=issuer, claims=claims)

    def _parse_unverified(self, token: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        try:
            header = jwt.get_unverified_header(token)
            claims = jwt.get_unverified_claims(token)
        except JOSEError as e:
            raise AuthenticationError("malformed_token", {"error": str(e)}) from e
        if not isinstance(header, dict) or not isinstance(claims, dict):
            raise AuthenticationError("malformed_token")
        return header, claims

    def _check_issuer(self, issuer: Any) -> str:
        if not isinstance(issuer, str) or not issuer:
            raise AuthenticationError("missing_issuer")

        parsed = urlparse(issuer)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise AuthenticationError("unrecognized_issuer", {"issuer": issuer})

        # Checked before any fetch so a forged issuer never causes outbound traffic.
        if self.allowed_issuers and issuer.rstrip("/") not in self.allowed_issuers:
            raise AuthenticationError("issuer_not_allowed", {"issuer": issuer})
        return issuer

    def _resolve_authority(self, issuer: str, mode: AuthorityMode) -> str:
        if mode is AuthorityMode.FRONTEND:
            if not self.frontend_authority_url:
                self.logger.error("Frontend authority URL is not configured")
                raise AuthenticationError("frontend_authority_unconfigured")
            return self.frontend_authority_url
        return issuer

    @staticmethod
    def _key_matches(key: JsonWebKey, alg: str) -> bool:
        return key.alg is None or key.alg == alg

    @staticmethod
    def _construct_key(key: JsonWebKey, alg: str) -> None:
        # Published keys may omit or garble their parameters.
        try:
            jwk.construct(key.as_jwk(), alg)
        except (JOSEError, ValueError, TypeError) as e:
            raise AuthenticationError("invalid_key", {"kid": key.kid, "error": str(e)}) from e

    def _decode(self, token: str, key: JsonWebKey, alg: str, issuer: str) -> Dict[str, Any]:
        options = {
            "verify_aud": False,
            "require_exp": True,
            "leeway": self.leeway,
        }
        try:
            return jwt.decode(token, key.as_jwk(), algorithms=[alg], issuer=issuer, options=options)
        except ExpiredSignatureError as e:
            raise AuthenticationError("token_expired") from e
        except (JOSEError, ValueError, TypeError) as e:
            raise AuthenticationError("invalid_token", {"error": str(e)}) from e
