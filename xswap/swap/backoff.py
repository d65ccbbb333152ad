"""
Exponential backoff with randomized jitter for chain adapter retries.
"""

import random


def calculate_backoff(
    attempt: int, base: float = 1.0, max_delay: float = 30.0, jitter: float = 0.25
) -> float:
    """
    Calculate exponential backoff with jitter.

    Args:
        attempt: Retry attempt number (0-indexed)
        base: Base delay in seconds
        max_delay: Maximum delay cap in seconds
        jitter: Jitter range in seconds (±jitter)

    Returns:
        Delay in seconds
    """
    capped = min(base * (2 ** attempt), max_delay)
    return max(0.0, capped + random.uniform(-jitter, jitter))
