"""
HTTP client for the internal maintenance endpoints of backend services.
"""

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

import httpx

from shared.errors import ConfigurationError
from shared.logging import get_logger

CLEAR_PATH = "/internal/maintenance/clear"


@dataclass(frozen=True)
class MaintenanceTarget:
    name: str
    base_url: str

    @property
    def clear_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{CLEAR_PATH}"


class ServiceMaintenanceClient:
    """Issues maintenance calls to the configured services."""

    def __init__(
        self,
        services: Mapping[str, str],
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = 30.0,
    ):
        self._targets: Dict[str, MaintenanceTarget] = {
            name: MaintenanceTarget(name, url) for name, url in services.items()
        }
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.logger = get_logger("admin.client")

    @classmethod
    def from_config(cls, config, client: Optional[httpx.AsyncClient] = None) -> "ServiceMaintenanceClient":
        return cls(config.maintenance_services, client, timeout=config.maintenance_timeout)

    @property
    def service_names(self) -> List[str]:
        return list(self._targets)

    def target(self, name: str) -> MaintenanceTarget:
        try:
            return self._targets[name]
        except KeyError:
            raise ConfigurationError(f"Unknown maintenance service '{name}'", {"service": name}) from None

    async def clear_database(self, name: str) -> None:
        """DELETE the service's clear endpoint; any non-2xx status raises."""
        target = self.target(name)
        response = await self._client.delete(target.clear_url)
        response.raise_for_status()
        self.logger.info("Service database cleared", service=name, status_code=response.status_code)

    async def close(self) -> None:
        await self._client.aclose()
