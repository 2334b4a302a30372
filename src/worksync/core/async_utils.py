"""Async utilities for bridging synchronous HTTP adapters to the sync engine."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Remote adapters are plain ``requests`` clients; every adapter call made
    by the orchestrator goes through here.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        item = await run_sync(adapter.get_item, "42")
    """
    return await asyncio.to_thread(func, *args, **kwargs)


def backoff_delay(
    attempt: int, base_delay_ms: float, max_delay_ms: float
) -> float:
    """Exponential backoff delay in seconds for a 1-based retry *attempt*.

    ``delay = min(base * 2^(attempt-1), max)``
    """
    delay_ms = min(base_delay_ms * (2 ** (attempt - 1)), max_delay_ms)
    return max(0.0, delay_ms) / 1000.0


def system_clock() -> float:
    """Wall-clock epoch seconds (remote reset times are epoch based)."""
    return time.time()


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
