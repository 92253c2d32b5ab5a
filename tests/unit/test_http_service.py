"""HTTP service client tests using httpx's mock transport."""

import json

import httpx
import pytest

from sagaline.config import SagalineConfig, ServiceEndpoint
from sagaline.errors import ServiceCallFailed, ServiceTimeoutError
from sagaline.registry.models import ServiceTarget
from sagaline.services import ServiceDirectory, get_service_client
from sagaline.services.http import HttpServiceClient

TARGET = ServiceTarget(service="inventory", operation="reserve")


def _client(handler) -> HttpServiceClient:
    transport = httpx.MockTransport(handler)
    return HttpServiceClient(
        "http://inventory.test/",
        headers={"X-Api-Key": "k"},
        client=httpx.AsyncClient(transport=transport),
    )


@pytest.mark.asyncio
async def test_posts_payload_to_operation_url():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        seen["key"] = request.headers.get("X-Api-Key")
        return httpx.Response(200, json={"reservation_id": "r-1"})

    client = _client(handler)
    result = await client.call(TARGET, {"sku": "abc"}, timeout=1)

    assert result == {"reservation_id": "r-1"}
    assert seen == {
        "url": "http://inventory.test/reserve",
        "body": {"sku": "abc"},
        "key": "k",
    }


@pytest.mark.asyncio
async def test_non_success_status_is_a_failure():
    client = _client(lambda request: httpx.Response(409, text="out of stock"))
    with pytest.raises(ServiceCallFailed) as exc:
        await client.call(TARGET, {}, timeout=1)
    assert exc.value.detail["status_code"] == 409
    assert "out of stock" in exc.value.message


@pytest.mark.asyncio
async def test_empty_and_scalar_bodies():
    empty = _client(lambda request: httpx.Response(204))
    assert await empty.call(TARGET, {}, timeout=1) == {}

    scalar = _client(lambda request: httpx.Response(200, json=[1, 2]))
    assert await scalar.call(TARGET, {}, timeout=1) == {"value": [1, 2]}


@pytest.mark.asyncio
async def test_transport_errors_are_mapped():
    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ServiceTimeoutError):
        await _client(timeout).call(TARGET, {}, timeout=1)
    with pytest.raises(ServiceCallFailed):
        await _client(refused).call(TARGET, {}, timeout=1)


def test_get_service_client_builds_http_clients():
    config = SagalineConfig(
        services={"inventory": ServiceEndpoint(base_url="http://inventory:8080")}
    )
    directory = get_service_client(config)
    assert isinstance(directory, ServiceDirectory)
    client = directory._client_for("inventory")
    assert isinstance(client, HttpServiceClient)
    assert client.base_url == "http://inventory:8080"
    with pytest.raises(ServiceCallFailed):
        directory._client_for("payments")
