"""Execution engine behaviour driven through the dispatcher."""

import asyncio

import pytest

from conftest import make_step, make_workflow
from sagaline.errors import DefinitionNotFound, InvalidState
from sagaline.models import CompensationStatus, InstanceStatus, StepOutcomeStatus
from sagaline.persistence.models import EventType


async def _events(store, instance_id, event_type):
    return [e for e in await store.load_events(instance_id) if e.event_type == event_type]


@pytest.mark.asyncio
async def test_linear_workflow_runs_steps_in_dependency_order(
    dispatcher, registry, store, services
):
    registry.register(
        make_workflow(
            "linear",
            make_step("a"),
            make_step("b", depends_on=["a"]),
            make_step("c", depends_on=["b"]),
        )
    )
    services.register("svc", "a", lambda payload: {"reservation": "r-1"})

    instance_id = await dispatcher.start("linear", {"order_id": "o-1"})
    instance = await dispatcher.wait(instance_id, timeout=5)

    assert instance.status == InstanceStatus.SUCCEEDED
    assert services.operations() == ["a", "b", "c"]
    started = await _events(store, instance_id, EventType.STEP_STARTED)
    assert [e.step_name for e in started] == ["a", "b", "c"]
    assert instance.context["a"] == {"reservation": "r-1"}
    assert instance.context["order_id"] == "o-1"

    # b saw the result of a in its payload
    _, payload_b = services.calls[1]
    assert payload_b["a"] == {"reservation": "r-1"}


@pytest.mark.asyncio
async def test_independent_steps_run_concurrently(dispatcher, registry, store, services):
    registry.register(
        make_workflow(
            "fanout",
            make_step("a"),
            make_step("b", depends_on=["a"]),
            make_step("c", depends_on=["a"]),
            make_step("d", depends_on=["b", "c"]),
        )
    )
    both_running = asyncio.Event()
    running = []

    async def branch(payload):
        running.append(1)
        if len(running) == 2:
            both_running.set()
        await asyncio.wait_for(both_running.wait(), timeout=2)
        return {}

    services.register("svc", "b", branch)
    services.register("svc", "c", branch)

    instance_id = await dispatcher.start("fanout")
    instance = await dispatcher.wait(instance_id, timeout=5)

    assert instance.status == InstanceStatus.SUCCEEDED
    d_started = instance.last_attempt("d").started_sequence
    assert d_started > instance.last_attempt("b").completed_sequence
    assert d_started > instance.last_attempt("c").completed_sequence


@pytest.mark.asyncio
async def test_failed_middle_step_compensates_completed_steps(
    dispatcher, registry, store, services
):
    registry.register(
        make_workflow(
            "three",
            make_step("step1"),
            make_step("step2", depends_on=["step1"]),
            make_step("step3", depends_on=["step2"]),
        )
    )
    services.fail("step2", "card declined")

    instance_id = await dispatcher.start("three")
    instance = await dispatcher.wait(instance_id, timeout=5)

    assert instance.status == InstanceStatus.COMPENSATED
    assert services.operations() == ["step1", "step2", "step2", "step2", "undo_step1"]
    assert "step3" not in services.operations()

    report = await dispatcher.status(instance_id)
    assert report.state == InstanceStatus.COMPENSATED
    assert report.completed_steps == ["step1"]
    assert report.compensated_steps == ["step1"]
    assert report.last_error.step_name == "step2"
    assert report.last_error.attempt == 3
    assert report.last_error.detail == "card declined"
    assert "step2" in report.compensation_reason


@pytest.mark.asyncio
async def test_compensations_run_in_reverse_order_of_success(
    dispatcher, registry, services
):
    registry.register(
        make_workflow(
            "abcd",
            make_step("a"),
            make_step("b", depends_on=["a"]),
            make_step("c", depends_on=["b"]),
            make_step("d", depends_on=["c"], retry={"max_attempts": 1}),
        )
    )
    services.fail("d")

    instance_id = await dispatcher.start("abcd")
    instance = await dispatcher.wait(instance_id, timeout=5)

    assert instance.status == InstanceStatus.COMPENSATED
    undo_calls = [op for op in services.operations() if op.startswith("undo_")]
    assert undo_calls == ["undo_c", "undo_b", "undo_a"]


@pytest.mark.asyncio
async def test_steps_without_compensation_are_not_applicable(
    dispatcher, registry, services
):
    registry.register(
        make_workflow(
            "notify_then_fail",
            make_step("notify", compensate=False),
            make_step("charge", depends_on=["notify"], retry={"max_attempts": 1}),
        )
    )
    services.fail("charge")

    instance_id = await dispatcher.start("notify_then_fail")
    instance = await dispatcher.wait(instance_id, timeout=5)

    assert instance.status == InstanceStatus.COMPENSATED
    assert instance.last_attempt("notify").compensation_status == (
        CompensationStatus.NOT_APPLICABLE
    )
    assert not any(op.startswith("undo_") for op in services.operations())


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_backoff(
    dispatcher, registry, store, services
):
    registry.register(make_workflow("flaky", make_step("flaky")))
    failures = iter(["first", "second"])

    def handler(payload):
        error = next(failures, None)
        if error:
            raise RuntimeError(error)
        return {"ok": True}

    services.register("svc", "flaky", handler)

    instance_id = await dispatcher.start("flaky")
    instance = await dispatcher.wait(instance_id, timeout=5)

    assert instance.status == InstanceStatus.SUCCEEDED
    assert [r.attempt for r in instance.attempts("flaky")] == [1, 2, 3]
    retries = await _events(store, instance_id, EventType.RETRY_SCHEDULED)
    assert [e.data["delay"] for e in retries] == pytest.approx([0.01, 0.02])


@pytest.mark.asyncio
async def test_step_timeout_is_a_failure(dispatcher, registry, services):
    registry.register(
        make_workflow(
            "slow", make_step("slow", timeout=0.05, retry={"max_attempts": 1})
        )
    )

    async def handler(payload):
        await asyncio.sleep(1)

    services.register("svc", "slow", handler)

    instance_id = await dispatcher.start("slow")
    instance = await dispatcher.wait(instance_id, timeout=5)

    assert instance.status == InstanceStatus.COMPENSATED
    assert instance.last_attempt("slow").outcome == StepOutcomeStatus.TIMED_OUT
    report = await dispatcher.status(instance_id)
    assert report.last_error.outcome == StepOutcomeStatus.TIMED_OUT


@pytest.mark.asyncio
async def test_forced_compensation_with_failing_compensation_ends_failed(
    dispatcher, registry, services
):
    registry.register(
        make_workflow("two", make_step("step1"), make_step("step2", depends_on=["step1"]))
    )
    entered = asyncio.Event()
    release = asyncio.Event()

    async def step2(payload):
        entered.set()
        await release.wait()
        return {"charged": True}

    services.register("svc", "step2", step2)
    services.fail("undo_step2", "refund service down")

    instance_id = await dispatcher.start("two")
    await asyncio.wait_for(entered.wait(), timeout=2)
    await dispatcher.force_compensate(instance_id)
    assert (await dispatcher.status(instance_id)).state == InstanceStatus.COMPENSATING
    release.set()

    instance = await dispatcher.wait(instance_id, timeout=5)

    assert instance.status == InstanceStatus.FAILED
    assert "undo_step1" not in services.operations()
    report = await dispatcher.status(instance_id)
    assert report.completed_steps == ["step1", "step2"]
    assert [f.step_name for f in report.failed_compensations] == ["step2"]
    assert report.failed_compensations[0].detail == "refund service down"
    assert report.pending_compensations == ["step1"]
    assert report.error["error"] == "CompensationError"
    assert report.compensation_reason == "forced by operator"


@pytest.mark.asyncio
async def test_force_compensate_during_retry_wait_skips_the_retry(
    dispatcher, registry, services, store
):
    registry.register(
        make_workflow(
            "order",
            make_step("reserve"),
            make_step(
                "charge",
                depends_on=["reserve"],
                retry={"max_attempts": 3, "base_delay": 30},
            ),
        )
    )
    services.fail("charge", "card declined")

    instance_id = await dispatcher.start("order")

    async def retry_armed():
        while True:
            if await _events(store, instance_id, EventType.RETRY_SCHEDULED):
                return
            await asyncio.sleep(0.01)

    await asyncio.wait_for(retry_armed(), timeout=2)
    await dispatcher.force_compensate(instance_id, reason="customer cancelled")
    instance = await dispatcher.wait(instance_id, timeout=2)

    assert instance.status == InstanceStatus.COMPENSATED
    assert services.operations().count("charge") == 1
    assert "undo_reserve" in services.operations()
    assert "undo_charge" not in services.operations()
    assert len(instance.attempts("charge")) == 1
    report = await dispatcher.status(instance_id)
    assert report.compensation_reason == "customer cancelled"


@pytest.mark.asyncio
async def test_force_compensate_rejected_once_terminal(dispatcher, registry):
    registry.register(make_workflow("single", make_step("only")))
    instance_id = await dispatcher.start("single")
    await dispatcher.wait(instance_id, timeout=5)

    with pytest.raises(InvalidState):
        await dispatcher.force_compensate(instance_id)


@pytest.mark.asyncio
async def test_terminal_instance_accepts_no_further_events(dispatcher, registry, store):
    registry.register(make_workflow("single", make_step("only")))
    instance_id = await dispatcher.start("single")
    instance = await dispatcher.wait(instance_id, timeout=5)
    events = await store.load_events(instance_id)

    late = events[-1].model_copy(
        update={"sequence": instance.last_sequence + 1, "event_type": EventType.STEP_STARTED}
    )
    with pytest.raises(InvalidState):
        await store.append(instance_id, late)
    assert len(await store.load_events(instance_id)) == len(events)


@pytest.mark.asyncio
async def test_start_with_unknown_definition_persists_nothing(dispatcher, store):
    with pytest.raises(DefinitionNotFound):
        await dispatcher.start("missing")
    assert await store.list_instances() == []


@pytest.mark.asyncio
async def test_start_resolves_latest_version(dispatcher, registry, services):
    registry.register(make_workflow("versioned", make_step("old"), version=1))
    registry.register(make_workflow("versioned", make_step("new"), version=2))

    instance_id = await dispatcher.start("versioned")
    instance = await dispatcher.wait(instance_id, timeout=5)

    assert instance.definition_version == 2
    assert services.operations() == ["new"]
