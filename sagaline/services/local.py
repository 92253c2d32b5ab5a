"""In-process service client for tests and embedded deployments."""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from ..errors import ServiceCallFailed
from ..registry.models import ServiceTarget
from .base import ServiceClient

Result = Optional[Dict[str, Any]]
Handler = Callable[[Dict[str, Any]], Union[Result, Awaitable[Result]]]


class LocalServiceClient(ServiceClient):
    """Dispatch calls to Python callables registered per operation."""

    def __init__(self) -> None:
        self._handlers: Dict[Tuple[str, str], Handler] = {}

    def register(self, service: str, operation: str, handler: Handler) -> None:
        self._handlers[(service, operation)] = handler

    def operation(self, service: str, operation: str) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: Handler) -> Handler:
            self.register(service, operation, handler)
            return handler

        return decorator

    async def call(
        self, target: ServiceTarget, payload: Dict[str, Any], timeout: float
    ) -> Dict[str, Any]:
        handler = self._handlers.get((target.service, target.operation))
        if handler is None:
            raise ServiceCallFailed(
                f"No handler registered for {target.service}.{target.operation}"
            )
        result = handler(payload)
        if inspect.isawaitable(result):
            result = await result
        return result or {}
