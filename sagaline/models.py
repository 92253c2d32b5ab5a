"""State of workflow instances as reconstructed from their event log."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class InstanceStatus(str, Enum):
    RUNNING = "running"
    COMPENSATING = "compensating"
    SUCCEEDED = "succeeded"
    COMPENSATED = "compensated"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {InstanceStatus.SUCCEEDED, InstanceStatus.COMPENSATED, InstanceStatus.FAILED}
)


class StepOutcomeStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class CompensationStatus(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepExecution(BaseModel):
    """Ledger record for one attempt of one step."""

    step_name: str
    attempt: int = 1
    outcome: StepOutcomeStatus = StepOutcomeStatus.PENDING
    error: Optional[str] = None
    started_sequence: int
    completed_sequence: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_delay: Optional[float] = None
    retry_due_at: Optional[datetime] = None
    compensation_status: Optional[CompensationStatus] = None
    compensation_attempts: int = 0
    compensation_error: Optional[str] = None

    @property
    def is_failure(self) -> bool:
        return self.outcome in (StepOutcomeStatus.FAILED, StepOutcomeStatus.TIMED_OUT)


class WorkflowInstance(BaseModel):
    """One execution of a workflow definition."""

    instance_id: str
    definition_name: str
    definition_version: int
    status: InstanceStatus = InstanceStatus.RUNNING
    context: dict[str, Any] = Field(default_factory=dict)
    step_names: list[str] = Field(default_factory=list)
    ledger: list[StepExecution] = Field(default_factory=list)
    last_sequence: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    compensation_reason: Optional[str] = None
    compensation_planned: bool = False
    error: Optional[dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def attempts(self, step_name: str) -> list[StepExecution]:
        return [record for record in self.ledger if record.step_name == step_name]

    def last_attempt(self, step_name: str) -> Optional[StepExecution]:
        for record in reversed(self.ledger):
            if record.step_name == step_name:
                return record
        return None

    def has_succeeded(self, step_name: str) -> bool:
        record = self.last_attempt(step_name)
        return record is not None and record.outcome == StepOutcomeStatus.SUCCEEDED

    @property
    def succeeded_steps(self) -> list[str]:
        """Succeeded steps in the order their success was recorded."""
        records = [
            record
            for record in (self.last_attempt(name) for name in self.step_names)
            if record is not None and record.outcome == StepOutcomeStatus.SUCCEEDED
        ]
        records.sort(key=lambda record: record.completed_sequence or 0)
        return [record.step_name for record in records]


class InstanceSummary(BaseModel):
    """Lightweight listing entry for an instance."""

    instance_id: str
    definition_name: str
    definition_version: int
    status: InstanceStatus
    last_sequence: int
    updated_at: Optional[datetime] = None
    outcome_published: bool = False
