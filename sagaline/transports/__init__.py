"""Bus transports and the factory selecting one from configuration."""

from __future__ import annotations

import logging
import os
from typing import Callable, Dict, Optional

from ..config import SagalineConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

logger = logging.getLogger(__name__)


def _redis_transport(config: SagalineConfig) -> BaseTransport:
    from .redis import RedisTransport

    return RedisTransport(**config.transport.redis.model_dump())


_BUILDERS: Dict[str, Callable[[SagalineConfig], BaseTransport]] = {
    "inmemory": lambda config: InMemoryTransport(),
    "redis": _redis_transport,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[SagalineConfig] = None
) -> BaseTransport:
    """Build the transport for ``backend``.

    The backend is taken from the argument, then ``SAGALINE_TRANSPORT``, then
    ``transport.backend`` in the configuration.
    """

    config = config or load_config()
    name = (
        backend or os.getenv("SAGALINE_TRANSPORT") or config.transport.backend
    ).lower()
    try:
        builder = _BUILDERS[name]
    except KeyError:
        raise ValueError(f"Unsupported transport backend: {name}") from None
    logger.debug(f"Using {name} transport")
    return builder(config)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
