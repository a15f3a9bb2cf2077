from __future__ import annotations

import asyncio
from collections import deque
from typing import Generic, TypeVar

from loguru import logger

T = TypeVar("T")


class Subscription(Generic[T]):
    """Bounded view of a broadcast. On overflow the oldest unread item is dropped."""

    def __init__(self, owner: Broadcast[T], capacity: int):
        self._owner = owner
        self._items: deque[T] = deque(maxlen=capacity)
        self._ready = asyncio.Event()
        self._closed = False
        self._error: BaseException | None = None
        self.dropped = 0

    def _push(self, item: T) -> None:
        if len(self._items) == self._items.maxlen:
            self.dropped += 1
            logger.trace(f"Notification buffer full; dropped oldest ({self.dropped} so far)")
        self._items.append(item)
        self._ready.set()

    def _finish(self, error: BaseException | None) -> None:
        self._closed = True
        self._error = error
        self._ready.set()

    def __aiter__(self) -> Subscription[T]:
        return self

    async def __anext__(self) -> T:
        while True:
            if self._items:
                return self._items.popleft()
            if self._closed:
                if self._error is not None:
                    raise self._error
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()

    def close(self) -> None:
        """Unsubscribe. Items already buffered can still be drained."""
        self._owner._unsubscribe(self)
        self._finish(None)


class Broadcast(Generic[T]):
    """Fans items out to every subscription without ever blocking the publisher."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._subscriptions: list[Subscription[T]] = []
        self._closed = False
        self._error: BaseException | None = None

    def subscribe(self) -> Subscription[T]:
        subscription = Subscription(self, self._capacity)
        if self._closed:
            subscription._finish(self._error)
        else:
            self._subscriptions.append(subscription)
        return subscription

    def publish(self, item: T) -> None:
        for subscription in self._subscriptions:
            subscription._push(item)

    def close(self, error: BaseException | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        for subscription in self._subscriptions:
            subscription._finish(error)
        self._subscriptions.clear()

    def _unsubscribe(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
