"""
Backoff calculation shared by registry adapters.
"""

import random


def calculate_exponential_backoff(
    retry_count: int,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    multiplier: float = 2.0,
    jitter: bool = True,
) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        retry_count: Current retry attempt (0-based)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds
        multiplier: Exponential multiplier
        jitter: Whether to add ±25% randomization to prevent thundering herd

    Returns:
        Delay in seconds before the next attempt

    Example (base_delay=0.5, jitter off):
        retry_count=0: 0.5s
        retry_count=1: 1s
        retry_count=2: 2s
        retry_count=5: 10s (capped at max_delay)
    """
    if retry_count < 0:
        return base_delay

    delay = base_delay * (multiplier**retry_count)
    delay = min(delay, max_delay)

    if jitter:
        jitter_range = delay * 0.25
        delay = delay + random.uniform(-jitter_range, jitter_range)

    # Never drop below the base delay so the progression stays monotone
    return max(delay, base_delay)
