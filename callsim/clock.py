from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Protocol, TypeVar


T = TypeVar("T")


class Clock(Protocol):
    def now_ms(self) -> int: ...

    async def sleep_ms(self, ms: int) -> None: ...

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T: ...


@dataclass(frozen=True, slots=True)
class RealClock(Clock):
    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep_ms(self, ms: int) -> None:
        if ms <= 0:
            await asyncio.sleep(0)
            return
        await asyncio.sleep(ms / 1000.0)

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)


class FakeClock(Clock):
    """
    Deterministic clock for tests.

    - now_ms() only moves when advance() or tick() is called.
    - sleep_ms() parks until advance() passes the wake time.
    - run_with_timeout() never times out on its own; tests drive timeouts via advance().
    """

    def __init__(self, start_ms: int = 0) -> None:
        self._now_ms = int(start_ms)
        self._sleepers: list[tuple[int, asyncio.Future[None]]] = []

    def now_ms(self) -> int:
        return self._now_ms

    def tick(self, ms: int = 1) -> int:
        # Synchronous bump for code paths that only read time.
        self._now_ms += int(ms)
        return self._now_ms

    async def sleep_ms(self, ms: int) -> None:
        if ms <= 0:
            await asyncio.sleep(0)
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._sleepers.append((self._now_ms + int(ms), fut))
        await fut

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable

        work = asyncio.ensure_future(awaitable)
        timer = asyncio.ensure_future(self.sleep_ms(timeout_ms))
        try:
            done, _ = await asyncio.wait({work, timer}, return_when=asyncio.FIRST_COMPLETED)
            if work in done:
                return work.result()
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            raise TimeoutError(f"operation timed out after {timeout_ms}ms")
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)

    async def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("FakeClock.advance(ms): ms must be >= 0")
        await asyncio.sleep(0)
        self._now_ms += int(ms)
        keep: list[tuple[int, asyncio.Future[None]]] = []
        for wake_at, fut in self._sleepers:
            if fut.done():
                continue
            if wake_at <= self._now_ms:
                fut.set_result(None)
            else:
                keep.append((wake_at, fut))
        self._sleepers = keep
        await asyncio.sleep(0)
