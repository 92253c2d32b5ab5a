"""Replaying an event log reproduces the live instance state."""

import pytest

from conftest import make_step, make_workflow
from sagaline.errors import InvalidState, PersistenceError
from sagaline.execute import SagaExecutor
from sagaline.invoker import StepInvoker
from sagaline.persistence.models import EventType, SagaEvent
from sagaline.persistence.replay import apply_event, rebuild_instance


def _created(instance_id="i-1"):
    return SagaEvent(
        instance_id=instance_id,
        sequence=1,
        event_type=EventType.INSTANCE_CREATED,
        data={
            "definition_name": "order",
            "definition_version": 1,
            "context": {"order_id": "o-1"},
            "step_names": ["a", "b"],
        },
    )


@pytest.mark.asyncio
async def test_replay_matches_live_state(store, services):
    definition = make_workflow(
        "order",
        make_step("a"),
        make_step("b", depends_on=["a"]),
        make_step("c", depends_on=["b"]),
    )
    services.fail("c")
    created = SagaEvent(
        instance_id="i-1",
        sequence=1,
        event_type=EventType.INSTANCE_CREATED,
        data={
            "definition_name": "order",
            "definition_version": 1,
            "context": {"order_id": "o-1"},
            "step_names": definition.step_names,
        },
    )
    await store.append("i-1", created)
    executor = SagaExecutor(
        rebuild_instance([created]), definition, store, StepInvoker(services)
    )

    live = await executor.run()

    replayed = await store.load_state("i-1")
    assert replayed.model_dump() == live.model_dump()
    assert (await store.load_state("i-1")).model_dump() == replayed.model_dump()


def test_rebuild_requires_creation_event():
    with pytest.raises(PersistenceError):
        rebuild_instance([])
    started = SagaEvent(
        instance_id="i-1", sequence=1, event_type=EventType.STEP_STARTED, step_name="a"
    )
    with pytest.raises(PersistenceError):
        rebuild_instance([started])


def test_apply_event_rejects_gaps_and_terminal_instances():
    instance = rebuild_instance([_created()])
    gap = SagaEvent(
        instance_id="i-1", sequence=3, event_type=EventType.STEP_STARTED, step_name="a"
    )
    with pytest.raises(PersistenceError):
        apply_event(instance, gap)

    apply_event(
        instance,
        SagaEvent(instance_id="i-1", sequence=2, event_type=EventType.INSTANCE_SUCCEEDED),
    )
    with pytest.raises(InvalidState):
        apply_event(
            instance,
            SagaEvent(
                instance_id="i-1",
                sequence=3,
                event_type=EventType.STEP_STARTED,
                step_name="a",
            ),
        )


def test_outcome_for_unknown_attempt_is_rejected():
    instance = rebuild_instance([_created()])
    with pytest.raises(PersistenceError):
        apply_event(
            instance,
            SagaEvent(
                instance_id="i-1",
                sequence=2,
                event_type=EventType.STEP_SUCCEEDED,
                step_name="a",
                attempt=1,
            ),
        )
