"""
Per-key coalescing of in-flight work.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable, TypeVar

T = TypeVar("T")


class SingleFlight:
    """Run at most one call per key; concurrent callers share its outcome.

    The shared call runs as its own task, so a caller that is cancelled
    (client went away) does not abort the work other callers are waiting on.
    """

    def __init__(self):
        self._calls: Dict[Hashable, "asyncio.Task[Any]"] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._calls

    def __len__(self) -> int:
        return len(self._calls)

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._calls[key] = task
            task.add_done_callback(lambda done, k=key: self._forget(k, done))
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: "asyncio.Task[Any]") -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        # Mark the outcome retrieved even when every waiter was cancelled.
        if not task.cancelled():
            task.exception()
