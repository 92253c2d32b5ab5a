"""Rebuild workflow instances from their event log.

Both the executor and :meth:`InstanceStore.load_state` go through
:func:`apply_event`, so live state and replayed state cannot diverge.
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Iterable

from ..errors import InvalidState, PersistenceError
from ..models import (
    CompensationStatus,
    StepExecution,
    StepOutcomeStatus,
    WorkflowInstance,
)
from .models import STATUS_BY_EVENT, EventType, SagaEvent

_OUTCOME_BY_EVENT = {
    EventType.STEP_SUCCEEDED: StepOutcomeStatus.SUCCEEDED,
    EventType.STEP_FAILED: StepOutcomeStatus.FAILED,
    EventType.STEP_TIMED_OUT: StepOutcomeStatus.TIMED_OUT,
}


def _record_for(instance: WorkflowInstance, event: SagaEvent) -> StepExecution:
    record = instance.last_attempt(event.step_name or "")
    if record is None or (event.attempt is not None and record.attempt != event.attempt):
        raise PersistenceError(
            f"Event {event.sequence} of {instance.instance_id} refers to an unknown "
            f"attempt of step {event.step_name}",
            {"sequence": event.sequence, "step_name": event.step_name},
        )
    return record


def apply_event(instance: WorkflowInstance, event: SagaEvent) -> WorkflowInstance:
    """Fold ``event`` into ``instance`` in place and return it."""

    if event.sequence != instance.last_sequence + 1:
        raise PersistenceError(
            f"Event sequence {event.sequence} does not follow {instance.last_sequence} "
            f"for instance {instance.instance_id}",
            {"expected": instance.last_sequence + 1, "got": event.sequence},
        )
    if instance.is_terminal:
        raise InvalidState(
            f"Instance {instance.instance_id} is {instance.status.value}; "
            f"no further transitions are accepted",
            {"instance_id": instance.instance_id, "status": instance.status.value},
        )

    kind = event.event_type
    data = event.data

    if kind == EventType.STEP_STARTED:
        instance.ledger.append(
            StepExecution(
                step_name=event.step_name,
                attempt=event.attempt or 1,
                started_sequence=event.sequence,
                started_at=event.recorded_at,
            )
        )
    elif kind in _OUTCOME_BY_EVENT:
        record = _record_for(instance, event)
        record.outcome = _OUTCOME_BY_EVENT[kind]
        record.completed_sequence = event.sequence
        record.completed_at = event.recorded_at
        record.error = data.get("error")
        if kind == EventType.STEP_SUCCEEDED and data.get("result") is not None:
            instance.context[event.step_name] = copy.deepcopy(data["result"])
    elif kind == EventType.RETRY_SCHEDULED:
        record = _record_for(instance, event)
        record.retry_delay = data["delay"]
        record.retry_due_at = datetime.fromisoformat(data["due_at"])
    elif kind == EventType.COMPENSATION_REQUESTED:
        instance.compensation_reason = data.get("reason")
    elif kind == EventType.COMPENSATION_PLANNED:
        instance.compensation_planned = True
        for name in data.get("order", []):
            instance.last_attempt(name).compensation_status = CompensationStatus.PENDING
        for name in data.get("not_applicable", []):
            instance.last_attempt(
                name
            ).compensation_status = CompensationStatus.NOT_APPLICABLE
    elif kind == EventType.COMPENSATION_STARTED:
        record = instance.last_attempt(event.step_name)
        record.compensation_attempts += 1
    elif kind == EventType.COMPENSATION_SUCCEEDED:
        instance.last_attempt(event.step_name).compensation_status = (
            CompensationStatus.SUCCEEDED
        )
    elif kind == EventType.COMPENSATION_FAILED:
        record = instance.last_attempt(event.step_name)
        record.compensation_status = CompensationStatus.FAILED
        record.compensation_error = data.get("error")
    elif kind == EventType.INSTANCE_FAILED:
        instance.error = copy.deepcopy(data.get("error"))

    if kind in STATUS_BY_EVENT:
        instance.status = STATUS_BY_EVENT[kind]
    instance.last_sequence = event.sequence
    instance.updated_at = event.recorded_at
    return instance


def rebuild_instance(events: Iterable[SagaEvent]) -> WorkflowInstance:
    """Replay a complete event history, oldest first."""

    iterator = iter(events)
    first = next(iterator, None)
    if first is None or first.event_type != EventType.INSTANCE_CREATED:
        raise PersistenceError("Event history must start with instance_created")

    data = first.data
    instance = WorkflowInstance(
        instance_id=first.instance_id,
        definition_name=data["definition_name"],
        definition_version=data["definition_version"],
        context=copy.deepcopy(data.get("context") or {}),
        step_names=list(data.get("step_names") or []),
        created_at=first.recorded_at,
    )
    apply_event(instance, first)
    for event in iterator:
        apply_event(instance, event)
    return instance
