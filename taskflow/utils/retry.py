from __future__ import annotations

import asyncio


def compute_backoff(attempt: int, delay_ms: int) -> float:
    """Linear backoff in seconds: ``delay_ms * attempt``."""
    return max(0, delay_ms) * attempt / 1000


async def schedule_retry(attempt: int, delay_ms: int) -> None:
    """Sleep for the computed backoff delay before retrying."""
    delay = compute_backoff(attempt, delay_ms)
    if delay > 0:
        await asyncio.sleep(delay)
