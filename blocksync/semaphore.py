"""Asyncio semaphores bounding memory use and request-id spread."""

from __future__ import annotations

import asyncio
import bisect
from collections import deque
from dataclasses import dataclass, field


@dataclass(eq=False)
class _MemWaiter:
    n: int
    future: asyncio.Future


class MemSemaphore:
    """Weighted semaphore that wakes waiters strictly in FIFO order."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._cur = 0
        self._waiters: deque[_MemWaiter] = deque()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        """Amount currently held."""
        return self._cur

    async def acquire(self, n: int) -> None:
        """Take n units, waiting behind earlier waiters if necessary."""
        if self._cur + n <= self._capacity and not self._waiters:
            self._cur += n
            return

        waiter = _MemWaiter(n, asyncio.get_running_loop().create_future())
        self._waiters.append(waiter)
        try:
            await waiter.future
        except asyncio.CancelledError:
            if waiter.future.done() and not waiter.future.cancelled():
                # Granted just as the caller was cancelled: give it back.
                self.release(n)
            else:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                self._wake_waiters()
            raise

    def release(self, n: int) -> None:
        """Return n units and wake any waiters that now fit."""
        self._cur -= n
        self._wake_waiters()

    def partial_release(self, n: int) -> None:
        """Return part of a holding (used when compression shrinks a chunk)."""
        self.release(n)

    def _wake_waiters(self) -> None:
        while self._waiters:
            front = self._waiters[0]
            if front.future.done():
                self._waiters.popleft()
                continue
            if self._cur + front.n > self._capacity:
                break
            self._cur += front.n
            self._waiters.popleft()
            front.future.set_result(None)


@dataclass(eq=False)
class _WinWaiter:
    req_id: int
    future: asyncio.Future


@dataclass
class _PressureEntry:
    threshold: float
    event: asyncio.Event
    fired: bool = False


class WindowSemaphore:
    """Bounds how far in-flight request ids may run ahead of the oldest one."""

    def __init__(self, max_window: int) -> None:
        self._max_window = max_window
        self._limit = 2 * max_window
        self._base = 0
        self._released = [False] * self._limit
        self._in_flight = 0
        self._waiters: list[_WinWaiter] = []
        self._pressure: list[_PressureEntry] = []

    @property
    def in_flight(self) -> int:
        """Number of request ids currently holding a slot."""
        return self._in_flight

    def _in_window(self, req_id: int) -> bool:
        return 0 <= req_id - self._base < self._limit

    async def acquire(self, req_id: int) -> None:
        """Take the slot for req_id, waiting until it falls inside the window."""
        if self._in_window(req_id):
            self._in_flight += 1
            self._check_pressure()
            return

        waiter = _WinWaiter(req_id, asyncio.get_running_loop().create_future())
        bisect.insort_left(self._waiters, waiter, key=lambda w: w.req_id)
        try:
            await waiter.future
        except asyncio.CancelledError:
            if waiter.future.done() and not waiter.future.cancelled():
                self._in_flight -= 1
                self._check_pressure()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self, req_id: int) -> None:
        """Mark req_id finished and advance the window past finished ids."""
        self._released[req_id % self._limit] = True
        self._in_flight -= 1

        while self._released[self._base % self._limit]:
            self._released[self._base % self._limit] = False
            self._base += 1

        self._wake_waiters()
        self._check_pressure()

    def is_released(self, req_id: int) -> bool:
        """True once req_id is released and the window has moved past it."""
        return self._base > req_id

    def pressure_signal(self, threshold: float) -> asyncio.Event:
        """Return an event set once in-flight reaches threshold * max_window."""
        entry = _PressureEntry(threshold, asyncio.Event())
        if self._in_flight >= threshold * self._max_window:
            entry.event.set()
            entry.fired = True
        self._pressure.append(entry)
        return entry.event

    def _wake_waiters(self) -> None:
        while self._waiters:
            front = self._waiters[0]
            if front.future.done():
                self._waiters.pop(0)
                continue
            if not self._in_window(front.req_id):
                break
            self._waiters.pop(0)
            self._in_flight += 1
            front.future.set_result(None)

    def _check_pressure(self) -> None:
        for entry in self._pressure:
            should_fire = self._in_flight >= entry.threshold * self._max_window
            if should_fire and not entry.fired:
                entry.event.set()
                entry.fired = True
            elif not should_fire:
                entry.fired = False


__all__ = ["MemSemaphore", "WindowSemaphore"]

_unused = field  # keep dataclasses import surface minimal
del _unused