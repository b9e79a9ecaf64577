"""Async utilities for bridging the blocking HTTP client to asyncio callers."""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        client = RemoteClient(config)
        worlds = await run_sync(client.list_worlds)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


class RequestLimiter:
    """Bound the number of blocking requests in flight at once.

    One limiter per ``SyncContext``.

    Args:
        max_parallel: Maximum concurrent calls through ``run``.
    """

    def __init__(self, max_parallel: int = 4) -> None:
        self.max_parallel = max_parallel
        self._semaphore = asyncio.Semaphore(max_parallel)
        logger.debug(
            "Request limiter initialized: max_parallel=%d", max_parallel
        )

    async def run(
        self, func: Callable[..., T], *args: Any, **kwargs: Any
    ) -> T:
        """Like ``run_sync`` but waits for a free slot first."""
        async with self._semaphore:
            return await asyncio.to_thread(func, *args, **kwargs)


async def gather_limited(
    coros: Sequence[Coroutine[Any, Any, T]],
) -> list[T]:
    """Run coroutines concurrently and return results in input order.

    Each coroutine should go through ``RequestLimiter.run`` internally.
    The first exception propagates to the caller.

    Args:
        coros: Sequence of coroutines to run concurrently.

    Returns:
        List of results in the same order as input coroutines.
    """
    return list(await asyncio.gather(*coros))
