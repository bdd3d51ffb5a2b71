from __future__ import annotations

import asyncio
import random

from ..constants import DEFAULT_BACKOFF_BASE, DEFAULT_BACKOFF_JITTER, DEFAULT_MAX_BACKOFF


def compute_backoff(
    attempt: int,
    base: float = DEFAULT_BACKOFF_BASE,
    jitter: float = DEFAULT_BACKOFF_JITTER,
    cap: float = DEFAULT_MAX_BACKOFF,
) -> float:
    """Compute exponential backoff with jitter, capped at ``cap`` seconds."""
    delay = min(base ** attempt, cap)
    return delay + random.uniform(0, jitter)


async def schedule_retry(delay: float) -> None:
    """Sleep for ``delay`` seconds before the next attempt."""
    await asyncio.sleep(delay)
