"""Small helpers shared by the engine."""

from .retry import GiveUp, Retry, RetryDecision, compute_backoff, next_action

__all__ = ["GiveUp", "Retry", "RetryDecision", "compute_backoff", "next_action"]
