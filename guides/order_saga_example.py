"""Run the order fulfilment saga against in-process services."""

import asyncio
from pathlib import Path

from sagaline import SagaDispatcher
from sagaline.persistence import InMemoryInstanceStore
from sagaline.registry import DefinitionRegistry, load_definitions
from sagaline.services import LocalServiceClient

services = LocalServiceClient()


@services.operation("inventory", "reserve")
def reserve(payload):
    return {"reservation_id": f"res-{payload['order_id']}"}


@services.operation("inventory", "release")
def release(payload):
    print(f"Released stock for {payload['order_id']}")


@services.operation("payments", "charge")
def charge(payload):
    return {"charge_id": f"ch-{payload['order_id']}", "amount": payload["amount"]}


@services.operation("payments", "refund")
def refund(payload):
    print(f"Refunded {payload['charge']['charge_id']}")


@services.operation("shipping", "dispatch")
async def dispatch(payload):
    raise RuntimeError("carrier unavailable")


async def main():
    registry = DefinitionRegistry()
    for definition in load_definitions(Path(__file__).with_name("workflows.yaml")):
        registry.register(definition)

    dispatcher = SagaDispatcher(
        registry=registry, store=InMemoryInstanceStore(), client=services
    )
    instance_id = await dispatcher.start(
        "order_fulfilment", {"order_id": "o-42", "amount": 99.5}
    )
    await dispatcher.wait(instance_id)

    report = await dispatcher.status(instance_id)
    print(f"Instance {instance_id}: {report.state.value}")
    print(f"Completed: {report.completed_steps}")
    print(f"Compensated: {report.compensated_steps}")
    print(f"Last error: {report.last_error}")


if __name__ == "__main__":
    asyncio.run(main())
