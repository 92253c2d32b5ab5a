"""In-memory implementation of the instance store."""

from __future__ import annotations

import asyncio
from typing import Dict, List

from ..errors import InstanceNotFound, InvalidState
from ..models import InstanceStatus, InstanceSummary
from .models import SagaEvent
from .repository import InstanceStore, check_append, check_publishable


class InMemoryInstanceStore(InstanceStore):
    """Store event logs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._events: Dict[str, List[SagaEvent]] = {}
        self._summaries: Dict[str, InstanceSummary] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def append(self, instance_id: str, event: SagaEvent) -> None:
        async with self._lock:
            summary = self._summaries.get(instance_id)
            status = check_append(
                instance_id,
                event,
                summary.status if summary else None,
                summary.last_sequence if summary else 0,
            )
            stored = event.model_copy(deep=True)
            if summary is None:
                self._events[instance_id] = [stored]
                self._summaries[instance_id] = InstanceSummary(
                    instance_id=instance_id,
                    definition_name=event.data["definition_name"],
                    definition_version=event.data["definition_version"],
                    status=status,
                    last_sequence=event.sequence,
                    updated_at=event.recorded_at,
                )
                return
            self._events[instance_id].append(stored)
            summary.status = status
            summary.last_sequence = event.sequence
            summary.updated_at = event.recorded_at

    async def load_events(self, instance_id: str) -> list[SagaEvent]:
        return [event.model_copy(deep=True) for event in self._events.get(instance_id, [])]

    async def list_by_status(self, status: InstanceStatus) -> list[InstanceSummary]:
        return [
            summary.model_copy()
            for summary in self._summaries.values()
            if summary.status == status
        ]

    async def list_instances(self) -> list[InstanceSummary]:
        return [summary.model_copy() for summary in self._summaries.values()]

    async def purge(self, instance_id: str) -> None:
        async with self._lock:
            summary = self._summaries.get(instance_id)
            if summary is None:
                raise InstanceNotFound(instance_id)
            if not summary.status.is_terminal:
                raise InvalidState(
                    f"Instance {instance_id} is {summary.status.value}; only terminal "
                    "instances can be purged"
                )
            del self._summaries[instance_id]
            del self._events[instance_id]

    async def mark_outcome_published(self, instance_id: str) -> None:
        async with self._lock:
            summary = self._summaries.get(instance_id)
            check_publishable(instance_id, summary.status if summary else None)
            summary.outcome_published = True

    async def list_unpublished(self) -> list[InstanceSummary]:
        return [
            summary.model_copy()
            for summary in self._summaries.values()
            if summary.status.is_terminal and not summary.outcome_published
        ]
