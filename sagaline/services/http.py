"""HTTP service client built on httpx."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from ..errors import ServiceCallFailed, ServiceTimeoutError
from ..registry.models import ServiceTarget
from .base import ServiceClient


class HttpServiceClient(ServiceClient):
    """Calls ``POST {base_url}/{operation}`` with a JSON body.

    A 2xx response is a success and its JSON body the result. Any other
    status is a business failure carrying the response body as detail.
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self._client = client
        self._owns_client = client is None

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(headers=self.headers)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def call(
        self, target: ServiceTarget, payload: Dict[str, Any], timeout: float
    ) -> Dict[str, Any]:
        if self._client is None:
            await self.connect()

        url = f"{self.base_url}/{target.operation}"
        try:
            response = await self._client.post(
                url, json=payload, headers=self.headers, timeout=timeout
            )
        except httpx.TimeoutException as exc:
            raise ServiceTimeoutError(
                f"{target.service}.{target.operation} did not answer within {timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ServiceCallFailed(
                f"{target.service}.{target.operation} unreachable: {exc}"
            ) from exc

        if response.is_success:
            if not response.content:
                return {}
            body = response.json()
            return body if isinstance(body, dict) else {"value": body}

        raise ServiceCallFailed(
            f"{target.service}.{target.operation} failed with HTTP {response.status_code}: "
            f"{response.text}",
            {"status_code": response.status_code},
        )
