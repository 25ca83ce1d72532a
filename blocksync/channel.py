"""Bounded asyncio channel that can be closed by the producer."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from typing import Generic, TypeVar

T = TypeVar("T")


class ChannelClosed(Exception):
    """Raised on sending to a closed channel or receiving from a drained one."""


class Channel(Generic[T]):
    """FIFO channel with a bounded buffer; a capacity of 0 behaves as 1."""

    def __init__(self, capacity: int = 1) -> None:
        if capacity < 0:
            raise ValueError(f"capacity {capacity} must not be negative")
        self._capacity = max(1, capacity)
        self._buffer: deque[T] = deque()
        self._closed = False
        self._getters: deque[asyncio.Future] = deque()
        self._putters: deque[asyncio.Future] = deque()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    async def send(self, item: T) -> None:
        """Put item in the buffer, waiting while it is full."""
        while len(self._buffer) >= self._capacity and not self._closed:
            await self._wait(self._putters)
        if self._closed:
            raise ChannelClosed("send on closed channel")
        self._buffer.append(item)
        self._wake_one(self._getters)

    async def receive(self) -> T:
        """Take the oldest item; raise ChannelClosed once closed and empty."""
        while not self._buffer:
            if self._closed:
                raise ChannelClosed("channel closed")
            await self._wait(self._getters)
        item = self._buffer.popleft()
        self._wake_one(self._putters)
        return item

    def close(self) -> None:
        """Close the channel; buffered items can still be received."""
        self._closed = True
        for waiters in (self._getters, self._putters):
            while waiters:
                fut = waiters.popleft()
                if not fut.done():
                    fut.set_result(None)

    async def __aiter__(self) -> AsyncIterator[T]:
        while True:
            try:
                item = await self.receive()
            except ChannelClosed:
                return
            yield item

    async def _wait(self, waiters: deque[asyncio.Future]) -> None:
        fut = asyncio.get_running_loop().create_future()
        waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut in waiters:
                waiters.remove(fut)
            elif fut.done() and not fut.cancelled():
                self._wake_one(waiters)
            raise

    @staticmethod
    def _wake_one(waiters: deque[asyncio.Future]) -> None:
        while waiters:
            fut = waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return