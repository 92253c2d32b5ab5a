"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..constants import QUEUE_PREFIX
from ..contracts import BusMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawMessage = Tuple[str, str]


class RedisTransport(BaseTransport[RawMessage]):
    """Redis-based transport using lists as queues."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"{QUEUE_PREFIX}:{topic}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: BusMessage) -> None:
        """Publish message to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.queue_name(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, BusMessage]]:
        """Subscribe to messages from Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self.queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = loop.time() - start_time
                if elapsed >= lifespan:
                    break

            # Blocking pop with timeout
            result = await self._redis.brpop(queue_name, timeout=1)
            if not result:
                continue

            _, message_json = result
            try:
                message = BusMessage.from_json(message_json)
            except ValidationError as e:
                logger.error(f"Dropping malformed message on {queue_name}: {e}")
                continue
            yield (topic, message_json), message

    async def ack(self, raw_message: RawMessage) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        """Push the message back onto its queue when ``requeue`` is set."""
        if requeue:
            topic, message_json = raw_message
            await self._redis.lpush(self.queue_name(topic), message_json)
