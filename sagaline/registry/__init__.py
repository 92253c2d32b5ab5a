"""Workflow definition registry."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Tuple

from ..errors import DefinitionNotFound, DuplicateVersion
from .loader import load_definitions
from .models import (
    DefinitionRef,
    RetryPolicy,
    ServiceTarget,
    StepDefinition,
    WorkflowDefinition,
)
from .validation import topological_order, validate_definition

logger = logging.getLogger(__name__)


class DefinitionRegistry:
    """Versioned store of immutable workflow definitions.

    Definitions are validated when registered and never change afterwards,
    so lookups need no locking; only registration is serialized.
    """

    def __init__(self) -> None:
        self._definitions: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self._latest: Dict[str, int] = {}
        self._lock = threading.Lock()

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        validate_definition(definition)
        key = (definition.name, definition.version)
        with self._lock:
            if key in self._definitions:
                raise DuplicateVersion(definition.name, definition.version)
            self._definitions[key] = definition
            if definition.version > self._latest.get(definition.name, 0):
                self._latest[definition.name] = definition.version
        logger.info(
            f"Registered workflow definition {definition.name} v{definition.version} "
            f"with {len(definition.steps)} steps"
        )
        return definition

    def get(self, name: str, version: int) -> WorkflowDefinition:
        try:
            return self._definitions[(name, version)]
        except KeyError:
            raise DefinitionNotFound(name, version) from None

    def latest(self, name: str) -> WorkflowDefinition:
        version = self._latest.get(name)
        if version is None:
            raise DefinitionNotFound(name)
        return self._definitions[(name, version)]

    def resolve(self, ref: DefinitionRef | str) -> WorkflowDefinition:
        """Return the definition a ref points to, latest when unversioned."""
        if isinstance(ref, str):
            ref = DefinitionRef(name=ref)
        if ref.version is None:
            return self.latest(ref.name)
        return self.get(ref.name, ref.version)

    def list(self) -> List[DefinitionRef]:
        return [
            DefinitionRef(name=name, version=version)
            for name, version in sorted(self._definitions)
        ]

    def __contains__(self, key: Tuple[str, int]) -> bool:
        return key in self._definitions


# Process-wide registry, populated at startup and read-only afterwards.
REGISTRY = DefinitionRegistry()


def register_definition(
    definition: WorkflowDefinition, registry: Optional[DefinitionRegistry] = None
) -> WorkflowDefinition:
    """Add ``definition`` to ``registry`` (the global ``REGISTRY`` by default)."""
    return (registry or REGISTRY).register(definition)


__all__ = [
    "DefinitionRef",
    "DefinitionRegistry",
    "REGISTRY",
    "RetryPolicy",
    "ServiceTarget",
    "StepDefinition",
    "WorkflowDefinition",
    "load_definitions",
    "register_definition",
    "topological_order",
    "validate_definition",
]
