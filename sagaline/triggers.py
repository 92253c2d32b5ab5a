"""Starts workflow instances from inbound bus messages."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, List, Optional

from .config import TriggerBinding
from .errors import DefinitionError, PersistenceError
from .transports import BaseTransport

if TYPE_CHECKING:
    from .dispatch import SagaDispatcher

logger = logging.getLogger(__name__)


class TriggerListener:
    """Subscribes to each bound topic and starts one instance per message."""

    def __init__(
        self,
        transport: BaseTransport,
        dispatcher: SagaDispatcher,
        bindings: List[TriggerBinding],
        requeue_delay: float = 1.0,
    ) -> None:
        self._transport = transport
        self._dispatcher = dispatcher
        self._bindings = bindings
        self._requeue_delay = requeue_delay

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Listen on all bound topics until ``lifespan`` expires."""
        if not self._bindings:
            logger.warning(
                "No trigger bindings configured; only recovered instances will run"
            )
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
            return
        await asyncio.gather(
            *(self._listen(binding, lifespan) for binding in self._bindings)
        )

    async def _listen(self, binding: TriggerBinding, lifespan: Optional[float]) -> None:
        logger.info(f"Listening on {binding.topic} for {binding.definition}")
        async for raw_message, message in self._transport.subscribe(
            binding.topic, lifespan=lifespan
        ):
            try:
                instance_id = await self._dispatcher.handle_trigger(
                    binding, message.payload
                )
            except DefinitionError as e:
                logger.error(
                    f"Dropping trigger {message.message_id} on {binding.topic}: {e.message}"
                )
                await self._transport.nack(raw_message, requeue=False)
                continue
            except PersistenceError as e:
                logger.error(
                    f"Could not record trigger {message.message_id} on {binding.topic}; "
                    f"requeueing: {e.message}"
                )
                await self._transport.nack(raw_message, requeue=True)
                await asyncio.sleep(self._requeue_delay)
                continue
            logger.info(
                f"Trigger {message.message_id} on {binding.topic} started {instance_id}"
            )
            await self._transport.ack(raw_message)
