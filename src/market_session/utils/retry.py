"""Backoff delays for retried requests."""

import random

from ..config.settings import RetryConfig


def backoff_delay(attempt: int, config: RetryConfig) -> float:
    """
    Delay before the next attempt, growing exponentially with the attempt number.

    Args:
        attempt: Number of attempts already made (1 after the first failure)
        config: Retry configuration

    Returns:
        Seconds to wait, capped at ``config.max_backoff_seconds``
    """
    delay = config.initial_backoff_seconds * (config.backoff_multiplier ** max(attempt - 1, 0))

    if config.jitter:
        # ±25% of the delay
        jitter_range = delay * 0.25
        delay += random.uniform(-jitter_range, jitter_range)

    return max(0.0, min(delay, config.max_backoff_seconds))
