"""Store abstraction for the per-instance event log."""

from __future__ import annotations

from typing import Optional, Protocol

from ..errors import InstanceNotFound, InvalidState, PersistenceError
from ..models import InstanceStatus, InstanceSummary, WorkflowInstance
from .models import STATUS_BY_EVENT, EventType, SagaEvent
from .replay import rebuild_instance


class InstanceStore(Protocol):
    """Protocol for durable, append-only instance persistence backends.

    ``append`` must not return before the event is durable. Implementations
    reject out-of-order sequence numbers with :class:`PersistenceError` and
    appends to terminal instances with :class:`InvalidState`.
    """

    async def append(self, instance_id: str, event: SagaEvent) -> None:
        """Durably append ``event`` to the log of ``instance_id``."""

    async def load_events(self, instance_id: str) -> list[SagaEvent]:
        """Return the full log of ``instance_id`` ordered by sequence."""

    async def list_by_status(self, status: InstanceStatus) -> list[InstanceSummary]:
        """Return summaries of instances currently in ``status``."""

    async def list_instances(self) -> list[InstanceSummary]:
        """Return summaries of all stored instances."""

    async def purge(self, instance_id: str) -> None:
        """Delete a terminal instance (retention tooling only)."""

    async def mark_outcome_published(self, instance_id: str) -> None:
        """Flag the outcome of a terminal instance as delivered.

        The flag lives beside the log, not in it, so it is not a lifecycle
        transition and does not change the instance status.
        """

    async def list_unpublished(self) -> list[InstanceSummary]:
        """Return terminal instances whose outcome is not yet delivered."""

    async def load_state(self, instance_id: str) -> WorkflowInstance:
        """Rebuild the instance by replaying its log, oldest first."""
        events = await self.load_events(instance_id)
        if not events:
            raise InstanceNotFound(instance_id)
        return rebuild_instance(events)


def check_append(
    instance_id: str,
    event: SagaEvent,
    current_status: Optional[InstanceStatus],
    last_sequence: int,
) -> InstanceStatus:
    """Validate an append against the stored head; return the new status."""

    if event.instance_id != instance_id:
        raise PersistenceError(
            f"Event for {event.instance_id} appended to instance {instance_id}"
        )
    if current_status is None:
        if event.sequence != 1 or event.event_type != EventType.INSTANCE_CREATED:
            raise PersistenceError(
                f"Instance {instance_id} must start with instance_created at sequence 1"
            )
        return InstanceStatus.RUNNING
    if current_status.is_terminal:
        raise InvalidState(
            f"Instance {instance_id} is {current_status.value}; append refused",
            {"instance_id": instance_id, "status": current_status.value},
        )
    if event.sequence != last_sequence + 1:
        raise PersistenceError(
            f"Sequence conflict for {instance_id}: expected {last_sequence + 1}, "
            f"got {event.sequence}",
            {"expected": last_sequence + 1, "got": event.sequence},
        )
    return STATUS_BY_EVENT.get(event.event_type, current_status)


def check_publishable(instance_id: str, status: Optional[InstanceStatus]) -> None:
    """Only terminal instances carry an outcome to deliver."""

    if status is None:
        raise InstanceNotFound(instance_id)
    if not status.is_terminal:
        raise InvalidState(
            f"Instance {instance_id} is {status.value}; it has no outcome yet",
            {"instance_id": instance_id, "status": status.value},
        )
