"""Message and result contracts exchanged by sagaline components."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import (
    CompensationStatus,
    InstanceStatus,
    StepOutcomeStatus,
    WorkflowInstance,
)


class StepOutcome(BaseModel):
    """Result of a single invocation of a step or compensation target."""

    status: StepOutcomeStatus
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def succeeded(cls, result: Optional[Dict[str, Any]] = None) -> "StepOutcome":
        return cls(status=StepOutcomeStatus.SUCCEEDED, result=result)

    @classmethod
    def failed(cls, error: str) -> "StepOutcome":
        return cls(status=StepOutcomeStatus.FAILED, error=error)

    @classmethod
    def timed_out(cls, error: str) -> "StepOutcome":
        return cls(status=StepOutcomeStatus.TIMED_OUT, error=error)

    @property
    def is_success(self) -> bool:
        return self.status == StepOutcomeStatus.SUCCEEDED


class StepError(BaseModel):
    """Last failure recorded for a step."""

    step_name: str
    attempt: int
    outcome: StepOutcomeStatus
    detail: Optional[str] = None


class CompensationFailure(BaseModel):
    step_name: str
    detail: Optional[str] = None


class InstanceStatusReport(BaseModel):
    """What the control surface reports about an instance."""

    instance_id: str
    definition_name: str
    definition_version: int
    state: InstanceStatus
    completed_steps: List[str] = Field(default_factory=list)
    pending_steps: List[str] = Field(default_factory=list)
    last_error: Optional[StepError] = None
    compensated_steps: List[str] = Field(default_factory=list)
    failed_compensations: List[CompensationFailure] = Field(default_factory=list)
    pending_compensations: List[str] = Field(default_factory=list)
    compensation_reason: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def from_instance(cls, instance: WorkflowInstance) -> "InstanceStatusReport":
        completed = instance.succeeded_steps
        last_error: Optional[StepError] = None
        failures = [record for record in instance.ledger if record.is_failure]
        if failures:
            latest = max(failures, key=lambda record: record.completed_sequence or 0)
            last_error = StepError(
                step_name=latest.step_name,
                attempt=latest.attempt,
                outcome=latest.outcome,
                detail=latest.error,
            )

        last_records = [
            record
            for record in (instance.last_attempt(name) for name in instance.step_names)
            if record is not None
        ]
        return cls(
            instance_id=instance.instance_id,
            definition_name=instance.definition_name,
            definition_version=instance.definition_version,
            state=instance.status,
            completed_steps=completed,
            pending_steps=[name for name in instance.step_names if name not in completed],
            last_error=last_error,
            compensated_steps=[
                r.step_name
                for r in last_records
                if r.compensation_status == CompensationStatus.SUCCEEDED
            ],
            failed_compensations=[
                CompensationFailure(step_name=r.step_name, detail=r.compensation_error)
                for r in last_records
                if r.compensation_status == CompensationStatus.FAILED
            ],
            pending_compensations=[
                r.step_name
                for r in last_records
                if r.compensation_status == CompensationStatus.PENDING
            ],
            compensation_reason=instance.compensation_reason,
            error=instance.error,
        )


class WorkflowOutcome(BaseModel):
    """Published once an instance reaches a terminal status."""

    instance_id: str
    definition_name: str
    definition_version: int
    status: InstanceStatus
    error: Optional[Dict[str, Any]] = None


class BusMessage(BaseModel):
    """
    Envelope exchanged over the bus: inbound triggers and outbound outcomes.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    kind: str = "trigger"
    payload: Dict[str, Any] = Field(default_factory=dict)
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "BusMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
