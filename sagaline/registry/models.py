"""Pydantic models describing workflow definitions."""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..constants import DEFAULT_STEP_TIMEOUT


class ServiceTarget(BaseModel):
    """A remotely callable operation on a domain service."""

    model_config = ConfigDict(frozen=True)

    service: str
    operation: str

    @model_validator(mode="before")
    @classmethod
    def _parse_dotted(cls, value: Any) -> Any:
        # Accept the compact ``"service.operation"`` form used in YAML files.
        if isinstance(value, str):
            service, sep, operation = value.partition(".")
            if not sep or not service or not operation:
                raise ValueError(
                    f"Target {value!r} must have the form 'service.operation'"
                )
            return {"service": service, "operation": operation}
        return value

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.service}.{self.operation}"


class RetryPolicy(BaseModel):
    """How often and how fast a failed step is retried."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)


class StepDefinition(BaseModel):
    """One node of a workflow's step graph."""

    model_config = ConfigDict(frozen=True)

    name: str
    invoke: ServiceTarget
    compensate: Optional[ServiceTarget] = None
    depends_on: tuple[str, ...] = ()
    timeout: float = Field(default=DEFAULT_STEP_TIMEOUT, gt=0)
    retry: RetryPolicy = RetryPolicy()
    inputs: Optional[tuple[str, ...]] = Field(
        default=None,
        description="Context key paths passed to the call; all context when unset",
    )

    @field_validator("name")
    @classmethod
    def _ensure_name(cls, v: str) -> str:
        if not v or "." in v:
            raise ValueError("step name must be non-empty and contain no '.'")
        return v


class DefinitionRef(BaseModel):
    """Identifies a workflow definition; ``version=None`` means latest."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: Optional[int] = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.name if self.version is None else f"{self.name}@v{self.version}"


class WorkflowDefinition(BaseModel):
    """Immutable, versioned step graph for one workflow type."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: int = Field(default=1, ge=1)
    description: Optional[str] = None
    steps: tuple[StepDefinition, ...]

    @property
    def ref(self) -> DefinitionRef:
        return DefinitionRef(name=self.name, version=self.version)

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    def step(self, name: str) -> StepDefinition:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)
