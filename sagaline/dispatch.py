"""Workflow dispatcher for sagaline: the control and query surface."""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from typing import Any, Dict, List, Optional

from .compensation import CompensationCoordinator
from .config import SagalineConfig, TriggerBinding, load_config
from .contracts import InstanceStatusReport
from .errors import (
    DefinitionNotFound,
    InstanceNotFound,
    InvalidState,
    PersistenceError,
)
from .execute import SagaExecutor
from .invoker import StepInvoker
from .models import InstanceStatus, WorkflowInstance
from .notify import OutcomePublisher
from .persistence import get_store
from .persistence.models import EventType, SagaEvent
from .persistence.replay import rebuild_instance
from .persistence.repository import InstanceStore
from .registry import REGISTRY, DefinitionRegistry
from .registry.models import DefinitionRef, WorkflowDefinition
from .services import ServiceClient, get_service_client
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class SagaDispatcher:
    """Starts, observes and controls workflow instances.

    Each live instance is owned by exactly one :class:`SagaExecutor` task.
    Control requests are forwarded to that executor rather than writing to
    the store directly.
    """

    def __init__(
        self,
        registry: Optional[DefinitionRegistry] = None,
        store: Optional[InstanceStore] = None,
        client: Optional[ServiceClient] = None,
        invoker: Optional[StepInvoker] = None,
        transport: Optional[BaseTransport] = None,
        config: Optional[SagalineConfig] = None,
    ) -> None:
        self._config = config or load_config()
        self._registry = registry or REGISTRY
        self._store = store or get_store(config=config)
        self._owns_client = invoker is None and client is None
        if invoker is None:
            client = client or get_service_client(self._config)
            invoker = StepInvoker(client)
        self._client = client
        self._invoker = invoker
        self._compensator = CompensationCoordinator(invoker)

        engine = self._config.engine
        self._publisher: Optional[OutcomePublisher] = None
        if transport is not None and engine.publish_outcomes:
            self._publisher = OutcomePublisher(
                transport,
                topic=engine.outcome_topic,
                max_delay=engine.max_retry_delay,
            )

        self._executors: Dict[str, SagaExecutor] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._publications: Dict[str, asyncio.Task] = {}

    @property
    def store(self) -> InstanceStore:
        return self._store

    async def start(
        self,
        ref: DefinitionRef | str,
        initial_context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Create an instance of ``ref`` and begin executing it.

        Args:
            ref: Definition name, or a :class:`DefinitionRef` pinning a version.
                Unversioned refs resolve to the latest registered version.
            initial_context: Starting context; step results are added to it
                under their step names.

        Returns:
            The new instance id.

        Raises:
            DefinitionError: The definition is unknown. Nothing is persisted.
        """
        definition = self._registry.resolve(ref)
        instance_id = str(uuid.uuid4())
        created = SagaEvent(
            instance_id=instance_id,
            sequence=1,
            event_type=EventType.INSTANCE_CREATED,
            data={
                "definition_name": definition.name,
                "definition_version": definition.version,
                "context": copy.deepcopy(initial_context or {}),
                "step_names": definition.step_names,
            },
        )
        await self._store.append(instance_id, created)
        instance = rebuild_instance([created])
        logger.info(
            f"Started instance {instance_id} of {definition.name} v{definition.version}"
        )
        self._spawn(instance, definition)
        return instance_id

    async def handle_trigger(
        self, binding: TriggerBinding, payload: Dict[str, Any]
    ) -> str:
        """Start the definition bound to a trigger with the message payload."""
        ref = DefinitionRef(name=binding.definition, version=binding.version)
        return await self.start(ref, payload)

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        executor = self._executors.get(instance_id)
        if executor is not None and not executor.closed:
            return executor.snapshot()
        return await self._store.load_state(instance_id)

    async def status(self, instance_id: str) -> InstanceStatusReport:
        """Report progress, failures and compensation state of an instance."""
        return InstanceStatusReport.from_instance(await self.get_instance(instance_id))

    async def force_compensate(
        self, instance_id: str, reason: str = "forced by operator"
    ) -> None:
        """Cancel a running instance and roll back what it completed.

        Raises:
            InvalidState: The instance is not ``running``.
            InstanceNotFound: No such instance.
        """
        executor = self._executors.get(instance_id)
        if executor is None or executor.closed:
            instance = await self._store.load_state(instance_id)
            if instance.status != InstanceStatus.RUNNING:
                raise InvalidState(
                    f"Instance {instance_id} is {instance.status.value}; "
                    "compensation can only be forced while running",
                    {"instance_id": instance_id, "status": instance.status.value},
                )
            definition = self._registry.get(
                instance.definition_name, instance.definition_version
            )
            executor = self._spawn(instance, definition)
        logger.info(f"Forcing compensation of {instance_id}: {reason}")
        await executor.request_compensation(reason)

    async def wait(
        self, instance_id: str, timeout: Optional[float] = None
    ) -> WorkflowInstance:
        """Wait for a live instance to settle and return its final state."""
        task = self._tasks.get(instance_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self._store.load_state(instance_id)

    async def recover(self) -> List[str]:
        """Resume every non-terminal instance found in the store.

        Terminal instances whose outcome was never delivered are queued for
        publication again when this dispatcher has a transport.

        Returns:
            Ids of the instances whose executors were restarted.
        """
        resumed: List[str] = []
        for status in (InstanceStatus.RUNNING, InstanceStatus.COMPENSATING):
            for summary in await self._store.list_by_status(status):
                if summary.instance_id in self._executors:
                    continue
                try:
                    definition = self._registry.get(
                        summary.definition_name, summary.definition_version
                    )
                except DefinitionNotFound:
                    logger.error(
                        f"Cannot recover {summary.instance_id}: definition "
                        f"{summary.definition_name} v{summary.definition_version} "
                        "is not registered"
                    )
                    continue
                instance = await self._store.load_state(summary.instance_id)
                self._spawn(instance, definition)
                resumed.append(summary.instance_id)
        if resumed:
            logger.info(f"Recovered {len(resumed)} instances: {resumed}")
        if self._publisher is not None:
            await self._republish_outcomes()
        return resumed

    async def flush_outcomes(self, timeout: Optional[float] = None) -> None:
        """Wait until every queued outcome has been delivered."""
        pending = list(self._publications.values())
        if pending:
            await asyncio.wait_for(
                asyncio.shield(asyncio.gather(*pending, return_exceptions=True)),
                timeout=timeout,
            )

    async def shutdown(self) -> None:
        """Stop driving live instances; they resume on the next ``recover``.

        Undelivered outcomes are abandoned here and sent again by ``recover``.
        """
        tasks = list(self._tasks.values()) + list(self._publications.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_client and self._client is not None:
            await self._client.close()

    def _spawn(
        self, instance: WorkflowInstance, definition: WorkflowDefinition
    ) -> SagaExecutor:
        engine = self._config.engine
        executor = SagaExecutor(
            instance,
            definition,
            self._store,
            self._invoker,
            compensator=self._compensator,
            max_retry_delay=engine.max_retry_delay,
            persistence_attempts=engine.persistence_attempts,
            on_terminal=self._publish,
        )
        task = asyncio.create_task(
            executor.run(), name=f"sagaline-{instance.instance_id}"
        )
        self._executors[instance.instance_id] = executor
        self._tasks[instance.instance_id] = task
        task.add_done_callback(lambda t, iid=instance.instance_id: self._forget(iid, t))
        return executor

    def _forget(self, instance_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(instance_id) is task:
            del self._tasks[instance_id]
            del self._executors[instance_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Executor for {instance_id} crashed: {exc!r}", exc_info=exc
            )

    async def _republish_outcomes(self) -> None:
        queued = 0
        for summary in await self._store.list_unpublished():
            iid = summary.instance_id
            if iid in self._publications or iid in self._executors:
                continue
            self._queue_publication(await self._store.load_state(iid))
            queued += 1
        if queued:
            logger.info(f"Republishing {queued} undelivered outcomes")

    async def _publish(self, instance: WorkflowInstance) -> None:
        if self._publisher is not None:
            self._queue_publication(instance)

    def _queue_publication(self, instance: WorkflowInstance) -> None:
        task = asyncio.create_task(
            self._deliver(instance), name=f"sagaline-outcome-{instance.instance_id}"
        )
        self._publications[instance.instance_id] = task
        task.add_done_callback(
            lambda t, iid=instance.instance_id: self._publications.pop(iid, None)
        )

    async def _deliver(self, instance: WorkflowInstance) -> None:
        await self._publisher.publish(instance)
        try:
            await self._store.mark_outcome_published(instance.instance_id)
        except (PersistenceError, InstanceNotFound) as e:
            # Left unmarked, the outcome is sent again by the next recover.
            logger.warning(
                f"Published outcome of {instance.instance_id} but could not record "
                f"it: {e}"
            )
