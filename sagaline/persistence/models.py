"""Data models for the persisted event log."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..models import InstanceStatus


class EventType(str, Enum):
    INSTANCE_CREATED = "instance_created"
    STEP_STARTED = "step_started"
    STEP_SUCCEEDED = "step_succeeded"
    STEP_FAILED = "step_failed"
    STEP_TIMED_OUT = "step_timed_out"
    RETRY_SCHEDULED = "retry_scheduled"
    COMPENSATION_REQUESTED = "compensation_requested"
    COMPENSATION_PLANNED = "compensation_planned"
    COMPENSATION_STARTED = "compensation_started"
    COMPENSATION_SUCCEEDED = "compensation_succeeded"
    COMPENSATION_FAILED = "compensation_failed"
    INSTANCE_SUCCEEDED = "instance_succeeded"
    INSTANCE_COMPENSATED = "instance_compensated"
    INSTANCE_FAILED = "instance_failed"


# Events that move the instance to a new lifecycle status.
STATUS_BY_EVENT: dict[EventType, InstanceStatus] = {
    EventType.INSTANCE_CREATED: InstanceStatus.RUNNING,
    EventType.COMPENSATION_REQUESTED: InstanceStatus.COMPENSATING,
    EventType.INSTANCE_SUCCEEDED: InstanceStatus.SUCCEEDED,
    EventType.INSTANCE_COMPENSATED: InstanceStatus.COMPENSATED,
    EventType.INSTANCE_FAILED: InstanceStatus.FAILED,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SagaEvent(BaseModel):
    """One entry of an instance's append-only log."""

    instance_id: str
    sequence: int = Field(ge=1)
    event_type: EventType
    step_name: Optional[str] = None
    attempt: Optional[int] = None
    outcome: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "SagaEvent":
        return cls.model_validate_json(data)
