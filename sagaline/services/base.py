"""Base interface for calling domain-service operations."""

from __future__ import annotations

import abc
from typing import Any, Dict

from ..registry.models import ServiceTarget


class ServiceClient(metaclass=abc.ABCMeta):
    """Abstract client for remotely callable domain-service operations.

    ``call`` returns the structured success payload. A business failure is
    raised as :class:`~sagaline.errors.ServiceCallFailed` and a missed
    deadline as :class:`~sagaline.errors.ServiceTimeoutError`.
    """

    async def connect(self) -> None:
        """Open underlying connections (no-op by default)."""
        pass

    async def close(self) -> None:
        """Release underlying connections (no-op by default)."""
        pass

    @abc.abstractmethod
    async def call(
        self, target: ServiceTarget, payload: Dict[str, Any], timeout: float
    ) -> Dict[str, Any]:
        """Invoke ``target`` with ``payload``, waiting at most ``timeout`` seconds."""
        raise NotImplementedError
