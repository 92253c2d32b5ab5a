"""Shared fixtures for sagaline tests."""

from typing import Any, Dict, List, Tuple

import pytest

from sagaline.config import SagalineConfig
from sagaline.dispatch import SagaDispatcher
from sagaline.errors import ServiceCallFailed
from sagaline.persistence import InMemoryInstanceStore
from sagaline.registry import DefinitionRegistry
from sagaline.registry.models import RetryPolicy, StepDefinition, WorkflowDefinition
from sagaline.services import LocalServiceClient

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.01, backoff_multiplier=2.0)


def make_step(name, depends_on=(), compensate=True, **kwargs) -> StepDefinition:
    """Step ``name`` calling ``svc.<name>`` and compensated by ``svc.undo_<name>``."""
    kwargs.setdefault("retry", FAST_RETRY)
    return StepDefinition(
        name=name,
        invoke=f"svc.{name}",
        compensate=f"svc.undo_{name}" if compensate else None,
        depends_on=tuple(depends_on),
        **kwargs,
    )


def make_workflow(name, *steps, version=1) -> WorkflowDefinition:
    return WorkflowDefinition(name=name, version=version, steps=steps)


class RecordingClient(LocalServiceClient):
    """Local client that remembers every call and succeeds by default."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def operations(self) -> List[str]:
        return [op for op, _ in self.calls]

    def fail(self, operation: str, error: str = "boom") -> None:
        def handler(payload):
            raise ServiceCallFailed(error)

        self.register("svc", operation, handler)

    async def call(self, target, payload, timeout):
        self.calls.append((target.operation, payload))
        if (target.service, target.operation) not in self._handlers:
            return {"done": target.operation}
        return await super().call(target, payload, timeout)


@pytest.fixture
def registry() -> DefinitionRegistry:
    return DefinitionRegistry()


@pytest.fixture
def store() -> InMemoryInstanceStore:
    return InMemoryInstanceStore()


@pytest.fixture
def services() -> RecordingClient:
    return RecordingClient()


@pytest.fixture
def dispatcher(registry, store, services) -> SagaDispatcher:
    return SagaDispatcher(
        registry=registry, store=store, client=services, config=SagalineConfig()
    )
