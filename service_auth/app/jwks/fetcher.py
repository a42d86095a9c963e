"""
JWKS fetcher.
"""

import time
from typing import Optional

import httpx
from pydantic import ValidationError

from shared.errors import FetchTimeout, FetchUnavailable, KeySetFetchError, MalformedResponse
from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.observability import ObservabilitySink

from .models import JWKSDocument, KeySet

JWKS_PATH = "/.well-known/jwks.json"


def jwks_url_for(authority_url: str) -> str:
    return f"{authority_url.rstrip('/')}{JWKS_PATH}"


class JWKSFetcher:
    """Fetches key sets from remote authorities. No caching and no retries."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = 10.0,
        sink: Optional[ObservabilitySink] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.metrics = metrics or get_metrics_collector("auth")
        self.sink = sink or ObservabilitySink("auth", self.metrics)
        self.logger = get_logger("auth.jwks.fetcher")

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def fetch(self, authority_url: str) -> KeySet:
        """GET the authority's key set.

        Raises FetchTimeout, FetchUnavailable or MalformedResponse. Every
        failure is reported to the observability sink before it is raised.
        """
        start_time = time.perf_counter()
        try:
            key_set = await self._fetch(authority_url)
        except KeySetFetchError as e:
            self.metrics.increment_counter("jwks_fetch_total", status="error")
            self.sink.capture_exception(
                e,
                tags={"operation": "jwks-fetch", "authority_url": authority_url},
                extra={"jwks_url": jwks_url_for(authority_url), "error_type": type(e).__name__},
            )
            raise
        finally:
            self.metrics.get_metric("jwks_fetch_duration_seconds").observe(time.perf_counter() - start_time)

        self.metrics.increment_counter("jwks_fetch_total", status="ok")
        self.logger.info("JWKS refreshed successfully", authority_url=authority_url, keys_count=len(key_set.keys))
        return key_set

    async def _fetch(self, authority_url: str) -> KeySet:
        url = jwks_url_for(authority_url)
        try:
            response = await self._client.get(url, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise FetchTimeout(authority_url, self.timeout) from e
        except httpx.HTTPError as e:
            raise FetchUnavailable(authority_url, message=f"JWKS request failed: {e}") from e

        if response.status_code != 200:
            raise FetchUnavailable(authority_url, status_code=response.status_code)

        try:
            document = JWKSDocument.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise MalformedResponse(authority_url) from e

        if not document.keys:
            raise MalformedResponse(authority_url, "JWKS response contains no keys")

        return KeySet(authority_url=authority_url, keys=tuple(document.keys))
