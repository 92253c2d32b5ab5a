"""Backward recovery: run compensations for steps that already succeeded."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from pydantic import BaseModel, Field

from .errors import CompensationError
from .invoker import StepInvoker
from .models import CompensationStatus, WorkflowInstance
from .persistence.models import EventType, SagaEvent
from .registry.models import WorkflowDefinition

logger = logging.getLogger(__name__)

Recorder = Callable[..., Awaitable[SagaEvent]]

INTERRUPTED = "compensation interrupted before its outcome was recorded"


class CompensationResult(BaseModel):
    """Outcome of one compensation run."""

    compensated: List[str] = Field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[str] = None
    pending: List[str] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.failed_step is None

    def to_error(self) -> CompensationError:
        return CompensationError(
            f"Compensation of step {self.failed_step} failed: {self.error}",
            {
                "step_name": self.failed_step,
                "error": self.error,
                "compensated": self.compensated,
                "pending": self.pending,
            },
        )


def compensation_plan(
    instance: WorkflowInstance, definition: WorkflowDefinition
) -> Tuple[List[str], List[str]]:
    """Split succeeded steps into compensation order and not-applicable.

    Order is the reverse of the order in which steps succeeded. A step only
    succeeds after its dependencies did, so this is a reverse topological
    order: dependents are always undone before what they depended on.
    """
    order: List[str] = []
    not_applicable: List[str] = []
    for name in reversed(instance.succeeded_steps):
        if definition.step(name).compensate is not None:
            order.append(name)
        else:
            not_applicable.append(name)
    return order, not_applicable


class CompensationCoordinator:
    """Runs each eligible compensation at most once, halting on failure.

    Every compensation is announced through ``record`` before the call is
    made, so the owning executor stays the only writer of the instance.
    """

    def __init__(self, invoker: StepInvoker) -> None:
        self._invoker = invoker

    async def compensate(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        record: Recorder,
    ) -> CompensationResult:
        if not instance.compensation_planned:
            order, not_applicable = compensation_plan(instance, definition)
            await record(
                EventType.COMPENSATION_PLANNED,
                data={"order": order, "not_applicable": not_applicable},
            )
            logger.info(
                f"Compensating {instance.instance_id}: order={order} "
                f"not_applicable={not_applicable}"
            )

        order = [
            name
            for name in reversed(instance.succeeded_steps)
            if instance.last_attempt(name).compensation_status
            not in (None, CompensationStatus.NOT_APPLICABLE)
        ]
        compensated = [
            name
            for name in order
            if instance.last_attempt(name).compensation_status
            == CompensationStatus.SUCCEEDED
        ]

        for index, name in enumerate(order):
            ledger_record = instance.last_attempt(name)
            status = ledger_record.compensation_status
            if status == CompensationStatus.SUCCEEDED:
                continue
            if status == CompensationStatus.FAILED:
                return self._partial(
                    compensated, name, ledger_record.compensation_error, order[index + 1 :]
                )
            if ledger_record.compensation_attempts > 0:
                await record(
                    EventType.COMPENSATION_FAILED,
                    step_name=name,
                    outcome="failed",
                    data={"error": INTERRUPTED},
                )
                return self._partial(compensated, name, INTERRUPTED, order[index + 1 :])

            step = definition.step(name)
            await record(EventType.COMPENSATION_STARTED, step_name=name)
            outcome = await self._invoker.compensate(step, instance.context)
            if outcome.is_success:
                await record(
                    EventType.COMPENSATION_SUCCEEDED, step_name=name, outcome="succeeded"
                )
                compensated.append(name)
                logger.info(f"Compensated step {name} of {instance.instance_id}")
                continue

            await record(
                EventType.COMPENSATION_FAILED,
                step_name=name,
                outcome=outcome.status.value,
                data={"error": outcome.error},
            )
            logger.error(
                f"Compensation of step {name} for {instance.instance_id} failed: "
                f"{outcome.error}. Halting rollback; remaining steps need manual attention."
            )
            return self._partial(compensated, name, outcome.error, order[index + 1 :])

        return CompensationResult(compensated=compensated)

    @staticmethod
    def _partial(
        compensated: List[str], failed_step: str, error: Optional[str], pending: List[str]
    ) -> CompensationResult:
        return CompensationResult(
            compensated=list(compensated),
            failed_step=failed_step,
            error=error,
            pending=list(pending),
        )
