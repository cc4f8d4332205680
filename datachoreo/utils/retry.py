from __future__ import annotations

import asyncio
import random
from typing import Optional


def compute_backoff(
    attempt: int, base: float = 1.5, jitter: float = 0.5, cap: Optional[float] = 10.0
) -> float:
    """Compute exponential backoff with jitter, bounded by ``cap``."""
    delay = base ** attempt + random.uniform(0, jitter)
    if cap is not None:
        delay = min(delay, cap)
    return delay


async def schedule_retry(
    attempt: int, base: float = 1.5, jitter: float = 0.5, cap: Optional[float] = 10.0
) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, jitter=jitter, cap=cap)
    await asyncio.sleep(delay)
