from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Deque, Generic, Optional, TypeVar


T = TypeVar("T")


class QueueClosed(Exception):
    """get() on a closed, fully drained queue."""


EvictPredicate = Callable[[T], bool]


class BoundedDequeQueue(Generic[T]):
    """
    Session inbox: socket frames, synthesis completions and the close marker, in arrival order.

    put() never waits. A full inbox refuses the item unless the caller names a queued item
    it may evict; the close marker evicts a raw frame so the loop always sees the disconnect.
    After close(), get() hands out what is left and then raises QueueClosed.

    Everything runs on one event loop, so no lock is taken; `refused`, `evicted` and
    `high_water` are reported when the session ends.
    """

    def __init__(self, maxsize: int) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self._maxsize = int(maxsize)
        self._items: Deque[T] = deque()
        self._closed = False
        self._wakeup = asyncio.Event()
        self.refused = 0
        self.evicted = 0
        self.high_water = 0

    @property
    def maxsize(self) -> int:
        return self._maxsize

    def qsize(self) -> int:
        return len(self._items)

    def closed(self) -> bool:
        return self._closed

    def _evict_first(self, evict: EvictPredicate[T]) -> bool:
        for idx, existing in enumerate(self._items):
            if evict(existing):
                del self._items[idx]
                self.evicted += 1
                return True
        return False

    async def put(self, item: T, *, evict: Optional[EvictPredicate[T]] = None) -> bool:
        if self._closed:
            return False
        if len(self._items) >= self._maxsize:
            if evict is None or not self._evict_first(evict):
                self.refused += 1
                return False
        self._items.append(item)
        self.high_water = max(self.high_water, len(self._items))
        self._wakeup.set()
        return True

    async def get(self) -> T:
        while not self._items:
            if self._closed:
                raise QueueClosed()
            self._wakeup.clear()
            await self._wakeup.wait()
        return self._items.popleft()

    async def close(self) -> None:
        self._closed = True
        self._wakeup.set()
