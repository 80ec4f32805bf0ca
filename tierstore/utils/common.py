# tierstore/utils/common.py
"""
Small shared helpers: time, human-readable sizes, bounded concurrency and
async retry for transient collaborator errors.
"""

from __future__ import annotations

import random
import asyncio
import datetime
import functools
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Tuple, Type

LOG = logging.getLogger("tierstore.common")


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def now_iso() -> str:
    return utcnow().isoformat().replace("+00:00", "Z")


def bytes_to_human(nbytes: int, precision: int = 2) -> str:
    """Return human readable bytes string (e.g. 12.34MB)."""
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(nbytes)
    for unit in units:
        if abs(size) < 1024.0 or unit == units[-1]:
            return f"{size:.{precision}f}{unit}"
        size /= 1024.0
    return f"{size:.{precision}f}TB"


async def bounded_gather(coros: Iterable[Awaitable[Any]], concurrency: int = 8, return_exceptions: bool = False) -> List[Any]:
    """
    Like asyncio.gather but limits the number of awaitables in flight.
    Results keep the input order.
    """
    sem = asyncio.Semaphore(max(1, concurrency))

    async def _run(coro: Awaitable[Any]) -> Any:
        async with sem:
            return await coro

    return await asyncio.gather(*(_run(c) for c in coros), return_exceptions=return_exceptions)


def retry_async(retries: int = 3, backoff_factor: float = 0.5, jitter: float = 0.1, max_backoff: float = 10.0,
                retry_on: Tuple[Type[BaseException], ...] = (ConnectionError, TimeoutError)):
    """
    Retry decorator for async functions. Only exceptions in ``retry_on`` are
    retried; everything else propagates on the first failure.
    """
    def _decorator(fn: Callable[..., Awaitable[Any]]):
        if not inspect.iscoroutinefunction(fn):
            raise ValueError("retry_async only supports async functions")

        @functools.wraps(fn)
        async def _wrapped(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await fn(*args, **kwargs)
                except retry_on as e:
                    attempt += 1
                    if attempt > retries:
                        LOG.error("Max retries exceeded for %s", fn.__name__)
                        raise
                    backoff = min(max_backoff, backoff_factor * (2 ** (attempt - 1)))
                    backoff = backoff * (1.0 + (random.random() * jitter))
                    LOG.warning("Transient error in %s attempt=%d/%d: %s; retrying in %.2fs", fn.__name__, attempt, retries, e, backoff)
                    await asyncio.sleep(backoff)
        return _wrapped
    return _decorator
