"""Adapts step definitions into bounded calls against domain services."""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Dict, Mapping

from .contracts import StepOutcome
from .errors import ServiceTimeoutError, StepInvocationError
from .registry.models import ServiceTarget, StepDefinition
from .services.base import ServiceClient

logger = logging.getLogger(__name__)

_MISSING = object()


def _lookup(context: Mapping[str, Any], path: str) -> Any:
    current: Any = context
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def project_context(step: StepDefinition, context: Mapping[str, Any]) -> Dict[str, Any]:
    """Build the call payload for ``step`` from the instance context.

    Without declared ``inputs`` the whole context is passed. Otherwise each
    dotted path is resolved and passed under its last segment, so
    ``reserve.reservation_id`` arrives as ``reservation_id``. Paths that do
    not resolve are left out.
    """
    if step.inputs is None:
        return copy.deepcopy(dict(context))

    payload: Dict[str, Any] = {}
    for path in step.inputs:
        value = _lookup(context, path)
        if value is _MISSING:
            logger.debug(f"Input {path} of step {step.name} not present in context")
            continue
        payload[path.rsplit(".", 1)[-1]] = copy.deepcopy(value)
    return payload


class StepInvoker:
    """Performs single, timeout-bounded calls for steps and compensations.

    The invoker never retries; the executor layers retry policy on top.
    """

    def __init__(self, client: ServiceClient) -> None:
        self._client = client

    async def invoke(self, step: StepDefinition, context: Mapping[str, Any]) -> StepOutcome:
        """Call the step's invocation target."""
        return await self._call(step, step.invoke, project_context(step, context))

    async def compensate(
        self, step: StepDefinition, context: Mapping[str, Any]
    ) -> StepOutcome:
        """Call the step's compensation target."""
        if step.compensate is None:
            raise ValueError(f"Step {step.name} has no compensation target")
        payload = project_context(step, context)
        # The step's own result is always visible to its compensation.
        if step.name in context:
            payload[step.name] = copy.deepcopy(context[step.name])
        return await self._call(step, step.compensate, payload)

    async def _call(
        self, step: StepDefinition, target: ServiceTarget, payload: Dict[str, Any]
    ) -> StepOutcome:
        try:
            result = await asyncio.wait_for(
                self._client.call(target, payload, step.timeout), timeout=step.timeout
            )
        except (asyncio.TimeoutError, ServiceTimeoutError):
            logger.warning(
                f"Call {target.service}.{target.operation} for step {step.name} "
                f"timed out after {step.timeout}s"
            )
            return StepOutcome.timed_out(
                f"{target.service}.{target.operation} timed out after {step.timeout}s"
            )
        except StepInvocationError as e:
            logger.warning(
                f"Call {target.service}.{target.operation} for step {step.name} failed: {e.message}"
            )
            return StepOutcome.failed(e.message)
        except Exception as e:
            logger.exception(
                f"Unexpected error calling {target.service}.{target.operation} for step {step.name}"
            )
            return StepOutcome.failed(f"{type(e).__name__}: {e}")

        if result is not None and not isinstance(result, dict):
            result = {"value": result}
        return StepOutcome.succeeded(result)
