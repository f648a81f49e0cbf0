from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Sequence, TypeVar

from server.src.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class FixedBatchScheduler:
    """Run async calls in fixed-size batches with a pause between batches.

    Calls inside a batch run concurrently. The pause is inserted after every
    batch except the last, which keeps a free-tier quota such as "45
    requests per minute" satisfied.
    """

    def __init__(
        self,
        batch_size: int,
        delay_seconds: float,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if delay_seconds < 0:
            raise ValueError("delay_seconds cannot be negative")
        self.batch_size = batch_size
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    async def run(self, items: Sequence[T], func: Callable[[T], Awaitable[R]]) -> List[R]:
        """Apply `func` to every item and return results in input order."""
        results: List[R] = []
        total = len(items)
        for start in range(0, total, self.batch_size):
            batch = items[start:start + self.batch_size]
            results.extend(await asyncio.gather(*(func(item) for item in batch)))
            if start + self.batch_size < total:
                logger.debug(
                    "Batch %d-%d of %d done; pausing %.2fs",
                    start + 1,
                    start + len(batch),
                    total,
                    self.delay_seconds,
                )
                await self._sleep(self.delay_seconds)
        return results
