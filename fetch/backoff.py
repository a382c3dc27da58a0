"""
Exponential backoff with full jitter for fetch retries.

delay = uniform(0, min(cap, base * 2 ** attempt))

Full jitter spreads concurrent retries against the same file server so a
recovering upstream isn't hit by synchronized bursts.
"""

import random
from typing import Optional


def calculate_delay(
    retry_count: int,
    base: float,
    cap: float,
    jitter_seed: Optional[int] = None,
) -> float:
    """
    Calculate the sleep before the next retry attempt.

    Args:
        retry_count: Zero-based index of the retry about to happen
        base: Base delay in seconds
        cap: Maximum delay in seconds
        jitter_seed: Seed for deterministic jitter (tests only)

    Returns:
        Delay in seconds within [0, min(cap, base * 2 ** retry_count)]
    """
    if base <= 0 or cap <= 0:
        return 0.0

    # Clamp exponent so huge retry counts don't overflow
    exponent = min(max(retry_count, 0), 32)
    ceiling = min(cap, base * (2 ** exponent))

    rng = random.Random(jitter_seed) if jitter_seed is not None else random
    return rng.uniform(0, ceiling)
