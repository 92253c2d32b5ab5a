from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import InvalidDefinition
from .models import WorkflowDefinition


def _with_default_timeout(entry: Any, default_timeout: Optional[float]) -> Any:
    if default_timeout is None or not isinstance(entry, dict):
        return entry
    steps = entry.get("steps")
    if not isinstance(steps, list):
        return entry
    return {
        **entry,
        "steps": [
            {"timeout": default_timeout, **step} if isinstance(step, dict) else step
            for step in steps
        ],
    }


def load_definitions(
    path: str | Path, default_timeout: Optional[float] = None
) -> List[WorkflowDefinition]:
    """Parse workflow definitions from a YAML document.

    The document holds a top-level ``workflows`` list; each entry is a
    :class:`WorkflowDefinition` in mapping form. Targets may be written as
    ``service.operation`` strings. Steps without a ``timeout`` get
    ``default_timeout`` when one is given.
    """

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    entries = data.get("workflows", []) if isinstance(data, dict) else data
    definitions: List[WorkflowDefinition] = []
    for index, entry in enumerate(entries or []):
        try:
            definitions.append(
                WorkflowDefinition.model_validate(
                    _with_default_timeout(entry, default_timeout)
                )
            )
        except ValidationError as exc:
            name = entry.get("name", f"#{index}") if isinstance(entry, dict) else f"#{index}"
            raise InvalidDefinition(
                "schema",
                f"Workflow {name} in {path} is malformed: {exc.errors()[0]['msg']}",
                workflow=name,
            ) from exc
    return definitions
