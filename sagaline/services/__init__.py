"""Service client factory and routing."""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..config import SagalineConfig, load_config
from ..errors import ServiceCallFailed
from ..registry.models import ServiceTarget
from .base import ServiceClient
from .http import HttpServiceClient
from .local import LocalServiceClient


class ServiceDirectory(ServiceClient):
    """Routes each call to the client registered for its service name."""

    def __init__(
        self,
        clients: Optional[Dict[str, ServiceClient]] = None,
        default: Optional[ServiceClient] = None,
    ) -> None:
        self._clients: Dict[str, ServiceClient] = dict(clients or {})
        self._default = default

    def add(self, service: str, client: ServiceClient) -> None:
        self._clients[service] = client

    def _client_for(self, service: str) -> ServiceClient:
        client = self._clients.get(service, self._default)
        if client is None:
            raise ServiceCallFailed(f"No client configured for service {service}")
        return client

    async def close(self) -> None:
        clients = {id(c): c for c in self._clients.values()}
        if self._default is not None:
            clients.setdefault(id(self._default), self._default)
        for client in clients.values():
            await client.close()

    async def call(
        self, target: ServiceTarget, payload: Dict[str, Any], timeout: float
    ) -> Dict[str, Any]:
        return await self._client_for(target.service).call(target, payload, timeout)


def get_service_client(config: Optional[SagalineConfig] = None) -> ServiceDirectory:
    """Build a directory with one HTTP client per configured service."""

    config = config or load_config()
    return ServiceDirectory(
        {
            name: HttpServiceClient(endpoint.base_url, headers=endpoint.headers)
            for name, endpoint in config.services.items()
        }
    )


__all__ = [
    "HttpServiceClient",
    "LocalServiceClient",
    "ServiceClient",
    "ServiceDirectory",
    "get_service_client",
]
