"""Exception hierarchy for the saga engine."""

from __future__ import annotations

from typing import Any, Optional


class SagalineError(Exception):
    """Base class for all sagaline errors.

    Args:
        message: Human-readable description.
        detail: Extra serialisable context for logs and status reports.
    """

    def __init__(self, message: str, detail: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: dict[str, Any] = detail or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "detail": self.detail,
        }


class DefinitionError(SagalineError):
    """A workflow definition is invalid or missing."""


class InvalidDefinition(DefinitionError):
    """A definition violates a registration rule."""

    def __init__(self, rule: str, message: str, **detail: Any) -> None:
        super().__init__(message, {"rule": rule, **detail})
        self.rule = rule


class DuplicateVersion(DefinitionError):
    def __init__(self, name: str, version: int) -> None:
        super().__init__(
            f"Workflow definition {name} v{version} is already registered",
            {"name": name, "version": version},
        )


class DefinitionNotFound(DefinitionError):
    def __init__(self, name: str, version: Optional[int] = None) -> None:
        label = name if version is None else f"{name} v{version}"
        super().__init__(
            f"Workflow definition {label} not found",
            {"name": name, "version": version},
        )


class StepInvocationError(SagalineError):
    """A domain-service call reported a failure or did not answer in time."""


class ServiceCallFailed(StepInvocationError):
    """The remote operation completed and reported a business failure."""


class ServiceTimeoutError(StepInvocationError):
    """The remote operation did not answer within the caller's timeout."""


class CompensationError(SagalineError):
    """A compensating action failed."""


class PersistenceError(SagalineError):
    """The instance store could not durably record an event."""


class InvalidState(SagalineError):
    """An operation is not allowed in the instance's current status."""


class InstanceNotFound(SagalineError):
    def __init__(self, instance_id: str) -> None:
        super().__init__(
            f"Workflow instance {instance_id} not found", {"instance_id": instance_id}
        )


__all__ = [
    "SagalineError",
    "DefinitionError",
    "InvalidDefinition",
    "DuplicateVersion",
    "DefinitionNotFound",
    "StepInvocationError",
    "ServiceCallFailed",
    "ServiceTimeoutError",
    "CompensationError",
    "PersistenceError",
    "InvalidState",
    "InstanceNotFound",
]
