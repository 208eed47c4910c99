from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

Sleeper = Callable[[float], Awaitable[None]]


def cleanup_backoff(attempt: int) -> float:
    """Doubling backoff between attempts: 1s, 2s, 4s..."""
    return float(2 ** (attempt - 1))


async def schedule_retry(
    attempt: int, delay: float | None = None, sleep: Sleeper = asyncio.sleep
) -> None:
    """Sleep for ``delay`` (or the doubling backoff) before retrying."""
    if delay is None:
        delay = cleanup_backoff(attempt)
    await sleep(delay)
