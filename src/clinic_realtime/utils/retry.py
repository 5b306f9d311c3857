from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any


def backoff_delay(attempt: int, *, base: float, cap: float, jitter: bool) -> float:
    delay = min(float(cap), float(base) * (2 ** max(0, int(attempt))))
    if jitter:
        delay = delay * (0.5 + random.random())
    return max(0.0, float(delay))


async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    *,
    retries: int = 3,
    base: float = 0.5,
    cap: float = 8.0,
    jitter: bool = True,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
) -> Any:
    """
    Await fn() with capped exponential backoff (+ optional jitter).

    retries: number of retry attempts (so total calls = 1 + retries)
    Cancellation is never retried.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            if attempt >= int(retries):
                raise
            delay = backoff_delay(attempt, base=base, cap=cap, jitter=jitter)
            attempt += 1
            if on_retry is not None:
                with suppress(Exception):
                    on_retry(attempt, delay, ex)
            await asyncio.sleep(delay)
