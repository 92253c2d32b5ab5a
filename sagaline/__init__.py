"""Sagaline: durable saga orchestration for distributed workflows."""

from .config import load_config
from .contracts import BusMessage, InstanceStatusReport, StepOutcome, WorkflowOutcome
from .dispatch import SagaDispatcher
from .execute import SagaExecutor
from .models import InstanceStatus, WorkflowInstance
from .persistence import get_store
from .registry import (
    REGISTRY,
    DefinitionRef,
    RetryPolicy,
    StepDefinition,
    WorkflowDefinition,
    register_definition,
)
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "BusMessage",
    "DefinitionRef",
    "InstanceStatus",
    "InstanceStatusReport",
    "REGISTRY",
    "RetryPolicy",
    "SagaDispatcher",
    "SagaExecutor",
    "StepDefinition",
    "StepOutcome",
    "WorkflowDefinition",
    "WorkflowInstance",
    "WorkflowOutcome",
    "get_store",
    "get_transport",
    "load_config",
    "register_definition",
]
