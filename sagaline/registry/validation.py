"""Registration-time checks for workflow step graphs."""

from __future__ import annotations

from typing import Dict, List, Set

from ..errors import InvalidDefinition
from .models import WorkflowDefinition


def topological_order(definition: WorkflowDefinition) -> List[str]:
    """Return step names ordered so every step follows its dependencies.

    Ties are broken by declaration order, so the result is deterministic.

    Raises:
        InvalidDefinition: If the graph contains a cycle.
    """
    remaining: Dict[str, Set[str]] = {
        step.name: set(step.depends_on) for step in definition.steps
    }
    order: List[str] = []
    while remaining:
        ready = [name for name, deps in remaining.items() if not deps]
        if not ready:
            cycle = sorted(remaining)
            raise InvalidDefinition(
                "cycle",
                f"Steps {', '.join(cycle)} of {definition.name} form a dependency cycle",
                steps=cycle,
            )
        for name in ready:
            order.append(name)
            del remaining[name]
        for deps in remaining.values():
            deps.difference_update(ready)
    return order


def upstream_steps(definition: WorkflowDefinition, step_name: str) -> Set[str]:
    """All steps ``step_name`` transitively depends on."""
    by_name = {step.name: step for step in definition.steps}
    seen: Set[str] = set()
    stack = list(by_name[step_name].depends_on)
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(by_name[current].depends_on)
    return seen


def validate_definition(definition: WorkflowDefinition) -> None:
    """Raise :class:`InvalidDefinition` naming the first violated rule."""

    if not definition.steps:
        raise InvalidDefinition(
            "empty_definition", f"Workflow {definition.name} declares no steps"
        )

    names: Set[str] = set()
    for step in definition.steps:
        if step.name in names:
            raise InvalidDefinition(
                "duplicate_step",
                f"Step {step.name} is declared more than once",
                step=step.name,
            )
        names.add(step.name)

    for step in definition.steps:
        for dep in step.depends_on:
            if dep == step.name:
                raise InvalidDefinition(
                    "self_dependency",
                    f"Step {step.name} depends on itself",
                    step=step.name,
                )
            if dep not in names:
                raise InvalidDefinition(
                    "unknown_dependency",
                    f"Step {step.name} depends on unknown step {dep}",
                    step=step.name,
                    dependency=dep,
                )
        if step.compensate is not None and step.compensate == step.invoke:
            raise InvalidDefinition(
                "compensation_matches_invocation",
                f"Step {step.name} uses {step.invoke} as its own compensation",
                step=step.name,
            )

    topological_order(definition)

    for step in definition.steps:
        if not step.inputs:
            continue
        upstream = upstream_steps(definition, step.name)
        for path in step.inputs:
            head = path.split(".", 1)[0]
            if head in names and head not in upstream:
                raise InvalidDefinition(
                    "unknown_input_step",
                    f"Step {step.name} reads {path} but does not depend on {head}",
                    step=step.name,
                    input=path,
                )
