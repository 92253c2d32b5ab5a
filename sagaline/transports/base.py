"""Bus transport interface used for workflow triggers and outcomes."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import BusMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract message broker binding.

    ``RawMessageT`` is whatever the broker needs to settle a delivery; it is
    handed back unchanged to :meth:`ack` and :meth:`nack`. Transports can be
    used as async context managers to bracket :meth:`connect` and
    :meth:`disconnect`.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, message: BusMessage) -> None:
        """Send ``message`` to ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, BusMessage]]:
        """Yield ``(raw, message)`` pairs consumed from ``topic``.

        Args:
            topic: The topic to consume.
            lifespan: Seconds to keep consuming; ``None`` consumes forever.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Settle a delivery as processed."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Settle a delivery as not processed; brokers without redelivery just ack."""
        await self.ack(raw_message)
