"""Tests for definition registration and validation."""

import pytest

from conftest import make_step, make_workflow
from sagaline.errors import DefinitionNotFound, DuplicateVersion, InvalidDefinition
from sagaline.registry import (
    DefinitionRef,
    DefinitionRegistry,
    load_definitions,
    topological_order,
)
from sagaline.registry.models import ServiceTarget, StepDefinition, WorkflowDefinition


def test_register_and_resolve_versions():
    registry = DefinitionRegistry()
    registry.register(make_workflow("order", make_step("a"), version=1))
    registry.register(make_workflow("order", make_step("a"), make_step("b"), version=2))

    assert registry.resolve("order").version == 2
    assert registry.resolve(DefinitionRef(name="order", version=1)).version == 1
    assert ("order", 1) in registry
    assert [ref.version for ref in registry.list()] == [1, 2]


def test_duplicate_version_rejected():
    registry = DefinitionRegistry()
    registry.register(make_workflow("order", make_step("a")))
    with pytest.raises(DuplicateVersion):
        registry.register(make_workflow("order", make_step("b")))


def test_unknown_definition():
    registry = DefinitionRegistry()
    with pytest.raises(DefinitionNotFound):
        registry.resolve("nope")
    registry.register(make_workflow("order", make_step("a")))
    with pytest.raises(DefinitionNotFound):
        registry.get("order", 7)


@pytest.mark.parametrize(
    "steps, rule",
    [
        ((), "empty_definition"),
        ((make_step("a"), make_step("a")), "duplicate_step"),
        ((make_step("a", depends_on=["a"]),), "self_dependency"),
        ((make_step("a", depends_on=["ghost"]),), "unknown_dependency"),
        (
            (make_step("a", depends_on=["b"]), make_step("b", depends_on=["a"])),
            "cycle",
        ),
        (
            (
                make_step("a"),
                make_step("b", inputs=("a.id",)),
            ),
            "unknown_input_step",
        ),
    ],
)
def test_invalid_definitions_are_rejected(steps, rule):
    registry = DefinitionRegistry()
    with pytest.raises(InvalidDefinition) as exc:
        registry.register(WorkflowDefinition(name="bad", steps=steps))
    assert exc.value.rule == rule
    assert registry.list() == []


def test_compensation_must_differ_from_invocation():
    step = StepDefinition(name="a", invoke="svc.do", compensate="svc.do")
    with pytest.raises(InvalidDefinition) as exc:
        DefinitionRegistry().register(WorkflowDefinition(name="bad", steps=(step,)))
    assert exc.value.rule == "compensation_matches_invocation"


def test_topological_order_is_deterministic():
    definition = make_workflow(
        "diamond",
        make_step("d", depends_on=["b", "c"]),
        make_step("c", depends_on=["a"]),
        make_step("b", depends_on=["a"]),
        make_step("a"),
    )
    assert topological_order(definition) == ["a", "c", "b", "d"]


def test_target_parsing():
    assert ServiceTarget.model_validate("inventory.reserve") == ServiceTarget(
        service="inventory", operation="reserve"
    )
    with pytest.raises(ValueError):
        ServiceTarget.model_validate("inventory")


def test_load_definitions_from_yaml(tmp_path):
    path = tmp_path / "workflows.yaml"
    path.write_text(
        """
workflows:
  - name: order_fulfilment
    version: 2
    steps:
      - name: reserve
        invoke: inventory.reserve
        compensate: inventory.release
      - name: charge
        invoke: payments.charge
        compensate: payments.refund
        depends_on: [reserve]
        timeout: 5
        retry: {max_attempts: 5, base_delay: 0.5}
"""
    )

    (definition,) = load_definitions(path, default_timeout=12)

    assert definition.ref == DefinitionRef(name="order_fulfilment", version=2)
    assert definition.step("reserve").timeout == 12
    assert definition.step("charge").timeout == 5
    assert definition.step("charge").retry.max_attempts == 5
    assert definition.step("reserve").compensate.operation == "release"


def test_load_definitions_reports_schema_errors(tmp_path):
    path = tmp_path / "workflows.yaml"
    path.write_text(
        """
workflows:
  - name: broken
    steps:
      - name: reserve
        invoke: not-a-target
"""
    )
    with pytest.raises(InvalidDefinition) as exc:
        load_definitions(path)
    assert exc.value.rule == "schema"
    assert exc.value.detail["workflow"] == "broken"
