"""Saga execution engine for sagaline workflow instances."""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from .compensation import CompensationCoordinator
from .constants import DEFAULT_MAX_RETRY_DELAY, DEFAULT_PERSISTENCE_ATTEMPTS
from .contracts import StepOutcome
from .errors import InvalidState, PersistenceError
from .invoker import StepInvoker
from .models import InstanceStatus, StepOutcomeStatus, WorkflowInstance
from .persistence.models import EventType, SagaEvent, utcnow
from .persistence.replay import apply_event
from .persistence.repository import InstanceStore
from .registry.models import RetryPolicy, StepDefinition, WorkflowDefinition
from .utils.retry import GiveUp, Retry, next_action

logger = logging.getLogger(__name__)

INTERRUPTED_STEP = "attempt interrupted by restart before its outcome was recorded"

_EVENT_BY_OUTCOME = {
    StepOutcomeStatus.SUCCEEDED: EventType.STEP_SUCCEEDED,
    StepOutcomeStatus.FAILED: EventType.STEP_FAILED,
    StepOutcomeStatus.TIMED_OUT: EventType.STEP_TIMED_OUT,
}


@dataclass
class _StepFinished:
    step_name: str
    attempt: int
    outcome: StepOutcome


@dataclass
class _RetryDue:
    step_name: str


@dataclass
class _CompensationRequested:
    reason: str
    reply: asyncio.Future


_Message = Union[_StepFinished, _RetryDue, _CompensationRequested]
TerminalCallback = Callable[[WorkflowInstance], Awaitable[Any]]


class SagaExecutor:
    """Drives one workflow instance from its current status to a terminal one.

    The executor is the single writer of its instance. Step completions,
    retry timers and control requests all arrive through one inbox and are
    applied one at a time. Every transition is appended to the store before
    it is acted upon, then folded into the in-memory state with the same
    :func:`apply_event` used for replay.
    """

    def __init__(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        store: InstanceStore,
        invoker: StepInvoker,
        compensator: Optional[CompensationCoordinator] = None,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        persistence_attempts: int = DEFAULT_PERSISTENCE_ATTEMPTS,
        on_terminal: Optional[TerminalCallback] = None,
    ) -> None:
        self._instance = instance
        self._definition = definition
        self._steps: Dict[str, StepDefinition] = {s.name: s for s in definition.steps}
        self._store = store
        self._invoker = invoker
        self._compensator = compensator or CompensationCoordinator(invoker)
        self._max_retry_delay = max_retry_delay
        self._persistence_policy = RetryPolicy(
            max_attempts=persistence_attempts, base_delay=0.05, backoff_multiplier=2.0
        )
        self._on_terminal = on_terminal
        self._inbox: asyncio.Queue[_Message] = asyncio.Queue()
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._retry_timers: Dict[str, asyncio.Task] = {}
        self._retry_due: Set[str] = set()
        self._closed = False

    @property
    def instance_id(self) -> str:
        return self._instance.instance_id

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> WorkflowInstance:
        """Return a detached copy of the current instance state."""
        return self._instance.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Control
    async def request_compensation(self, reason: str = "forced by operator") -> None:
        """Ask the executor to unwind; valid only while the instance is running."""
        if self._closed or self._instance.status != InstanceStatus.RUNNING:
            raise InvalidState(
                f"Instance {self.instance_id} is {self._instance.status.value}; "
                "compensation can only be forced while running",
                {"instance_id": self.instance_id, "status": self._instance.status.value},
            )
        reply = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(_CompensationRequested(reason, reply))
        await reply

    # ------------------------------------------------------------------
    # Main loop
    async def run(self) -> WorkflowInstance:
        logger.info(
            f"Driving instance {self.instance_id} ({self._definition.name} "
            f"v{self._definition.version}) from {self._instance.status.value}"
        )
        try:
            await self._resume()
            while not self._instance.is_terminal:
                if self._instance.status == InstanceStatus.RUNNING:
                    await self._drive_forward()
                else:
                    await self._unwind()
        except PersistenceError as e:
            await self._abandon(e)
        finally:
            self._closed = True
            self._cancel_retry_timers()
            for task in self._in_flight.values():
                task.cancel()
            self._in_flight.clear()
            self._drain_inbox()

        if self._instance.is_terminal:
            logger.info(
                f"Instance {self.instance_id} finished as {self._instance.status.value}"
            )
            if self._on_terminal is not None:
                await self._on_terminal(self.snapshot())
        return self._instance

    async def _drive_forward(self) -> None:
        # Apply whatever is already queued before starting more work.
        while not self._inbox.empty() and self._instance.status == InstanceStatus.RUNNING:
            await self._handle(self._inbox.get_nowait())
        if self._instance.status != InstanceStatus.RUNNING:
            return

        await self._launch_ready_steps()

        if all(self._instance.has_succeeded(name) for name in self._steps):
            await self._record(EventType.INSTANCE_SUCCEEDED)
            return

        if not self._in_flight and not self._retry_timers and self._inbox.empty():
            logger.error(
                f"Instance {self.instance_id} has no runnable, running or scheduled steps"
            )
            await self._record(
                EventType.COMPENSATION_REQUESTED,
                data={"reason": "no runnable steps remain"},
            )
            return

        await self._handle(await self._inbox.get())

    async def _unwind(self) -> None:
        self._cancel_retry_timers()
        # In-flight calls finish or time out on their own; their outcomes
        # are recorded before compensation looks at the ledger.
        while self._in_flight:
            await self._handle(await self._inbox.get())

        result = await self._compensator.compensate(
            self._instance, self._definition, self._record
        )
        if result.complete:
            await self._record(
                EventType.INSTANCE_COMPENSATED, data={"compensated": result.compensated}
            )
        else:
            await self._record(
                EventType.INSTANCE_FAILED, data={"error": result.to_error().to_dict()}
            )

    # ------------------------------------------------------------------
    # Recovery
    async def _resume(self) -> None:
        """Settle work that was in progress when a previous owner stopped."""
        now = utcnow()
        for name in self._instance.step_names:
            last = self._instance.last_attempt(name)
            if last is None:
                continue
            if last.outcome == StepOutcomeStatus.PENDING:
                logger.warning(
                    f"Step {name} attempt {last.attempt} of {self.instance_id} was "
                    "interrupted; recording it as failed"
                )
                await self._settle(name, last.attempt, StepOutcome.failed(INTERRUPTED_STEP))
            elif last.is_failure and self._instance.status == InstanceStatus.RUNNING:
                if last.retry_due_at is None:
                    await self._after_failure(name, last.attempt, last.error)
                else:
                    remaining = (last.retry_due_at - now).total_seconds()
                    self._arm_retry(name, max(0.0, remaining))

    # ------------------------------------------------------------------
    # Forward execution
    def _is_ready(self, step: StepDefinition) -> bool:
        if step.name in self._in_flight or step.name in self._retry_timers:
            return False
        last = self._instance.last_attempt(step.name)
        if last is not None:
            if not last.is_failure or step.name not in self._retry_due:
                return False
        return all(self._instance.has_succeeded(dep) for dep in step.depends_on)

    async def _launch_ready_steps(self) -> None:
        for step in self._definition.steps:
            if not self._is_ready(step):
                continue
            last = self._instance.last_attempt(step.name)
            attempt = 1 if last is None else last.attempt + 1
            await self._record(EventType.STEP_STARTED, step_name=step.name, attempt=attempt)
            self._retry_due.discard(step.name)
            context = copy.deepcopy(self._instance.context)
            self._in_flight[step.name] = asyncio.create_task(
                self._invoke(step, attempt, context),
                name=f"{self.instance_id}:{step.name}:{attempt}",
            )
            logger.info(f"Started step {step.name} attempt {attempt} of {self.instance_id}")

    async def _invoke(
        self, step: StepDefinition, attempt: int, context: Dict[str, Any]
    ) -> None:
        outcome = await self._invoker.invoke(step, context)
        await self._inbox.put(_StepFinished(step.name, attempt, outcome))

    async def _handle(self, message: _Message) -> None:
        if isinstance(message, _StepFinished):
            task = self._in_flight.pop(message.step_name, None)
            last = self._instance.last_attempt(message.step_name)
            if (
                task is None
                or last is None
                or last.attempt != message.attempt
                or last.outcome != StepOutcomeStatus.PENDING
            ):
                logger.warning(
                    f"Discarding unexpected outcome for step {message.step_name} "
                    f"attempt {message.attempt} of {self.instance_id}"
                )
                return
            await self._settle(message.step_name, message.attempt, message.outcome)
        elif isinstance(message, _RetryDue):
            self._retry_timers.pop(message.step_name, None)
            if self._instance.status == InstanceStatus.RUNNING:
                self._retry_due.add(message.step_name)
        elif isinstance(message, _CompensationRequested):
            await self._handle_compensation_request(message)

    async def _handle_compensation_request(self, message: _CompensationRequested) -> None:
        if self._instance.status != InstanceStatus.RUNNING:
            if not message.reply.done():
                message.reply.set_exception(
                    InvalidState(
                        f"Instance {self.instance_id} is {self._instance.status.value}; "
                        "compensation can only be forced while running"
                    )
                )
            return
        try:
            await self._record(
                EventType.COMPENSATION_REQUESTED, data={"reason": message.reason}
            )
        except PersistenceError as e:
            if not message.reply.done():
                message.reply.set_exception(e)
            raise
        logger.warning(f"Compensation of {self.instance_id} requested: {message.reason}")
        if not message.reply.done():
            message.reply.set_result(None)

    async def _settle(self, name: str, attempt: int, outcome: StepOutcome) -> None:
        if outcome.is_success:
            data = {"result": outcome.result}
        else:
            data = {"error": outcome.error}
        await self._record(
            _EVENT_BY_OUTCOME[outcome.status],
            step_name=name,
            attempt=attempt,
            outcome=outcome.status.value,
            data=data,
        )
        if outcome.is_success:
            logger.info(f"Step {name} of {self.instance_id} succeeded on attempt {attempt}")
            return
        if self._instance.status != InstanceStatus.RUNNING:
            logger.info(
                f"Step {name} of {self.instance_id} {outcome.status.value} while "
                "compensating; not retried"
            )
            return
        await self._after_failure(name, attempt, outcome.error)

    async def _after_failure(self, name: str, attempt: int, error: Optional[str]) -> None:
        decision = next_action(self._steps[name].retry, attempt, self._max_retry_delay)
        if isinstance(decision, Retry):
            due_at = utcnow() + timedelta(seconds=decision.delay)
            await self._record(
                EventType.RETRY_SCHEDULED,
                step_name=name,
                attempt=attempt,
                data={"delay": decision.delay, "due_at": due_at.isoformat()},
            )
            self._arm_retry(name, decision.delay)
            logger.warning(
                f"Step {name} attempt {attempt} of {self.instance_id} failed ({error}); "
                f"retrying in {decision.delay}s"
            )
            return

        reason = f"step {name} gave up after {attempt} attempt(s): {error}"
        await self._record(
            EventType.COMPENSATION_REQUESTED, step_name=name, data={"reason": reason}
        )
        logger.error(f"Instance {self.instance_id} compensating: {reason}")

    def _arm_retry(self, name: str, delay: float) -> None:
        async def _fire() -> None:
            await asyncio.sleep(delay)
            await self._inbox.put(_RetryDue(name))

        self._retry_timers[name] = asyncio.create_task(
            _fire(), name=f"{self.instance_id}:{name}:retry"
        )

    def _cancel_retry_timers(self) -> None:
        for task in self._retry_timers.values():
            task.cancel()
        self._retry_timers.clear()
        self._retry_due.clear()

    def _drain_inbox(self) -> None:
        while not self._inbox.empty():
            message = self._inbox.get_nowait()
            if isinstance(message, _CompensationRequested):
                if not message.reply.done():
                    message.reply.set_exception(
                        InvalidState(
                            f"Instance {self.instance_id} is "
                            f"{self._instance.status.value}; no further transitions"
                        )
                    )
            elif isinstance(message, _StepFinished):
                logger.warning(
                    f"Discarding late outcome {message.outcome.status.value} for step "
                    f"{message.step_name} of {self._instance.status.value} instance "
                    f"{self.instance_id}"
                )

    # ------------------------------------------------------------------
    # Write-ahead recording
    async def _record(
        self,
        event_type: EventType,
        step_name: Optional[str] = None,
        attempt: Optional[int] = None,
        outcome: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> SagaEvent:
        event = SagaEvent(
            instance_id=self.instance_id,
            sequence=self._instance.last_sequence + 1,
            event_type=event_type,
            step_name=step_name,
            attempt=attempt,
            outcome=outcome,
            data=data or {},
        )
        await self._append(event)
        apply_event(self._instance, event)
        return event

    async def _append(self, event: SagaEvent) -> None:
        attempt = 1
        while True:
            try:
                await self._store.append(self.instance_id, event)
                return
            except PersistenceError as e:
                decision = next_action(
                    self._persistence_policy, attempt, self._max_retry_delay
                )
                if isinstance(decision, GiveUp):
                    raise
                logger.warning(
                    f"Appending {event.event_type.value} for {self.instance_id} failed "
                    f"({e.message}); retrying in {decision.delay}s"
                )
                await asyncio.sleep(decision.delay)
                attempt += 1

    async def _abandon(self, error: PersistenceError) -> None:
        logger.error(
            f"Instance {self.instance_id} stopped: transition could not be persisted "
            f"({error.message})"
        )
        if self._instance.is_terminal:
            return
        event = SagaEvent(
            instance_id=self.instance_id,
            sequence=self._instance.last_sequence + 1,
            event_type=EventType.INSTANCE_FAILED,
            data={"error": error.to_dict()},
        )
        try:
            await self._store.append(self.instance_id, event)
        except (PersistenceError, InvalidState) as e:
            logger.critical(
                f"Instance {self.instance_id} left {self._instance.status.value}; "
                f"operator action required ({e.message})"
            )
            return
        apply_event(self._instance, event)
