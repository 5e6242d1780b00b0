"""Async fan-out used by adapters to hand events to their subscribers."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Generic, TypeVar

T = TypeVar("T")


class Subscription(Generic[T]):
    """One subscriber's view of a fan-out; closing it unregisters the queue."""

    def __init__(self, fanout: Fanout[T]) -> None:
        self._fanout = fanout
        self._queue: asyncio.Queue[T | None] = asyncio.Queue()
        self._closed = False

    def __aiter__(self) -> Subscription[T]:
        return self

    async def __anext__(self) -> T:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is None:
            await self.aclose()
            raise StopAsyncIteration
        return item

    def put(self, item: T | None) -> None:
        self._queue.put_nowait(item)

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            self._fanout.unsubscribe(self)


class Fanout(Generic[T]):
    """Broadcasts items to every open subscription; ``None`` ends them.

    Must be fed from the event loop thread.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscription[T]] = []

    def __len__(self) -> int:
        return len(self._subscribers)

    def publish(self, item: T) -> None:
        for subscription in self._subscribers:
            subscription.put(item)

    def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription.put(None)

    def stream(self) -> AsyncIterator[T]:
        # Register eagerly so nothing published after this call is missed.
        subscription = Subscription(self)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
