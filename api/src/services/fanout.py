"""
Bounded parallel fan-out over upstream calls.
"""

import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

from api.src.config import get_settings

settings = get_settings()

T = TypeVar("T")
R = TypeVar("R")

async def fan_out(
    func: Callable[[T], Awaitable[R]],
    items: Iterable[T],
    limit: Optional[int] = None,
) -> List[R]:
    """
    Run `func` over every item concurrently, at most `limit` at a time.

    Results are returned in input order. Exceptions propagate; callers that
    need per-item outcomes catch inside `func`.
    """
    max_parallel = limit or settings.fan_out_limit
    if max_parallel < 1:
        raise ValueError("fan-out limit must be >= 1")

    semaphore = asyncio.Semaphore(max_parallel)

    async def run(item: T) -> R:
        async with semaphore:
            return await func(item)

    return list(await asyncio.gather(*(run(item) for item in items)))
