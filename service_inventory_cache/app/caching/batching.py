"""
Bounded, cancellable batch execution for store operations.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar, Union

T = TypeVar("T")
R = TypeVar("R")


def partition(items: Sequence[T], size: int) -> List[List[T]]:
    """Split ``items`` into consecutive groups of at most ``size``."""
    size = max(1, size)
    return [list(items[start:start + size]) for start in range(0, len(items), size)]


class OperationCancelled(Exception):
    """Raised when the cancellation event is set between batches."""

    def __init__(self, completed: int):
        super().__init__(f"Cancelled after {completed} operations")
        self.completed = completed


async def pause(delay: float, cancel_event: Optional[asyncio.Event] = None) -> bool:
    """Wait ``delay`` seconds; return True early if ``cancel_event`` gets set."""
    if cancel_event is None:
        if delay > 0:
            await asyncio.sleep(delay)
        return False
    if cancel_event.is_set():
        return True
    if delay <= 0:
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    batch_size: int,
    delay: float = 0.0,
    cancel_event: Optional[asyncio.Event] = None,
) -> List[Union[R, BaseException]]:
    """
    Run ``worker`` over ``items`` with at most ``batch_size`` calls in flight.

    Each batch is awaited as a whole before the next one starts, with a pause
    of ``delay`` seconds in between. Failures are isolated: a worker exception
    is returned in that item's slot instead of propagating. Results keep the
    order of ``items``. Raises ``OperationCancelled`` when ``cancel_event`` is
    set before or between batches.
    """
    results: List[Union[R, BaseException]] = []
    size = max(1, batch_size)

    for start in range(0, len(items), size):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(len(results))

        batch = items[start:start + size]
        outcomes: List[Any] = await asyncio.gather(
            *(worker(item) for item in batch),
            return_exceptions=True
        )
        for outcome in outcomes:
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
        results.extend(outcomes)

        if start + size < len(items):
            if await pause(delay, cancel_event):
                raise OperationCancelled(len(results))

    return results
