"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import BusMessage
from .base import BaseTransport

RawMessage = Tuple[str, str, BusMessage]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process queue for unit tests."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, message: BusMessage) -> None:
        """Publish message to in-memory queue."""
        raw = (topic, message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)

    def pending(self, topic: str) -> list[BusMessage]:
        """Messages published to ``topic`` and not yet consumed."""
        return [raw[2] for raw in self._queues[topic]]

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, BusMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = loop.time() - start_time
                if elapsed >= lifespan:
                    break

            async with self._lock:
                raw_message = (
                    self._queues[topic].popleft() if self._queues[topic] else None
                )
            if raw_message is not None:
                yield raw_message, raw_message[2]
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: RawMessage) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        """Put the message back at the end of its queue when ``requeue`` is set."""
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].append(raw_message)
