"""Publishes terminal workflow outcomes on the bus."""

from __future__ import annotations

import asyncio
import logging

from .constants import DEFAULT_MAX_RETRY_DELAY, DEFAULT_OUTCOME_TOPIC
from .contracts import BusMessage, WorkflowOutcome
from .models import WorkflowInstance
from .registry.models import RetryPolicy
from .transports import BaseTransport
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


class OutcomePublisher:
    """At-least-once publication of terminal outcomes.

    ``publish`` keeps retrying with capped backoff until the transport
    accepts the message. Consumers deduplicate by ``correlation_id`` (the
    instance id). A failure to publish never changes the instance, which is
    already terminal.
    """

    def __init__(
        self,
        transport: BaseTransport,
        topic: str = DEFAULT_OUTCOME_TOPIC,
        max_delay: float = DEFAULT_MAX_RETRY_DELAY,
    ) -> None:
        self._transport = transport
        self._topic = topic
        self._policy = RetryPolicy(base_delay=0.1)
        self._max_delay = max_delay

    @staticmethod
    def build_message(instance: WorkflowInstance) -> BusMessage:
        outcome = WorkflowOutcome(
            instance_id=instance.instance_id,
            definition_name=instance.definition_name,
            definition_version=instance.definition_version,
            status=instance.status,
            error=instance.error,
        )
        return BusMessage(
            correlation_id=instance.instance_id,
            kind="outcome",
            payload=outcome.model_dump(mode="json"),
        )

    async def publish(self, instance: WorkflowInstance) -> int:
        """Publish the outcome of ``instance``; return the attempts it took."""
        message = self.build_message(instance)
        attempt = 1
        while True:
            try:
                await self._transport.publish(self._topic, message)
                logger.info(
                    f"Published outcome {instance.status.value} of {instance.instance_id} "
                    f"to {self._topic}"
                )
                return attempt
            except Exception as e:
                delay = compute_backoff(self._policy, attempt, self._max_delay)
                logger.warning(
                    f"Publishing outcome of {instance.instance_id} failed on attempt "
                    f"{attempt} ({e}); retrying in {delay}s"
                )
                await asyncio.sleep(delay)
                attempt += 1
