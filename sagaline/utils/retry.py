from __future__ import annotations

from typing import Union

from pydantic import BaseModel

from ..constants import DEFAULT_MAX_RETRY_DELAY
from ..registry.models import RetryPolicy


class Retry(BaseModel):
    """Try the step again after ``delay`` seconds."""

    delay: float


class GiveUp(BaseModel):
    """No attempts left."""


RetryDecision = Union[Retry, GiveUp]


def compute_backoff(
    policy: RetryPolicy, attempt: int, max_delay: float = DEFAULT_MAX_RETRY_DELAY
) -> float:
    """Exponential backoff without jitter so replays stay deterministic."""
    try:
        delay = policy.base_delay * policy.backoff_multiplier ** (attempt - 1)
    except OverflowError:
        return max_delay
    return min(delay, max_delay)


def next_action(
    policy: RetryPolicy, attempt: int, max_delay: float = DEFAULT_MAX_RETRY_DELAY
) -> RetryDecision:
    """Decide what follows the failure of ``attempt`` (1-based)."""
    if attempt < 1:
        raise ValueError("attempt numbers start at 1")
    if attempt >= policy.max_attempts:
        return GiveUp()
    return Retry(delay=compute_backoff(policy, attempt, max_delay))
