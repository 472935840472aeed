"""Closeable async queue used to stream agent events to a consumer.

The producer side is synchronous (push/close/fail can be called from
callbacks or reader tasks); the consumer iterates with ``async for``.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Generic, TypeVar

T = TypeVar("T")

_CLOSED = object()


class EventChannel(Generic[T]):
    """Ordered, single-pass delivery of items from one producer.

    - push(item): deliver to a waiting reader or buffer it.
    - close(): readers drain what is buffered, then iteration stops.
    - fail(error): readers drain what is buffered, then get ``error`` raised.

    Items pushed after close/fail are dropped.
    """

    def __init__(self) -> None:
        self._items: deque[T] = deque()
        self._waiters: deque[asyncio.Future] = deque()
        self._done = False
        self._error: BaseException | None = None

    @property
    def closed(self) -> bool:
        return self._done

    def push(self, item: T) -> None:
        if self._done:
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(item)
                return
        self._items.append(item)

    def close(self) -> None:
        if self._done:
            return
        self._done = True
        self._flush()

    def fail(self, error: BaseException) -> None:
        if self._done:
            return
        self._error = error
        self._done = True
        self._flush()

    def _flush(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            if self._error is not None:
                waiter.set_exception(self._error)
            else:
                waiter.set_result(_CLOSED)

    def __aiter__(self) -> "EventChannel[T]":
        return self

    async def __anext__(self) -> T:
        if self._items:
            return self._items.popleft()
        if self._error is not None:
            raise self._error
        if self._done:
            raise StopAsyncIteration

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        value = await waiter
        if value is _CLOSED:
            raise StopAsyncIteration
        return value
