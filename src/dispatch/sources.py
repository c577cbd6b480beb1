"""Message sources feeding the worker pools.

Broker adapters live outside the bridge; anything that can be iterated
asynchronously and yields ``Message`` values can feed a pool.  Two
in-process sources are provided: ``QueueSource`` for push-style
producers and ``IterableSource`` for fixed batches.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from typing import Protocol

from src.models.message import Message


class MessageSource(Protocol):
    """Asynchronous stream of messages; iteration ends when the source closes."""

    def __aiter__(self) -> AsyncIterator[Message]: ...


_CLOSED = object()


class QueueSource:
    """Push-style source backed by an ``asyncio.Queue``.

    Producers ``await put(...)``; ``close()`` ends iteration once every
    message put before it has been consumed.
    """

    def __init__(self, source: str, maxsize: int = 0) -> None:
        self.source = source
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._closed = False

    async def put(self, payload: bytes | Message) -> None:
        if self._closed:
            raise RuntimeError(f"Source '{self.source}' is closed")
        if not isinstance(payload, Message):
            payload = Message(source=self.source, payload=payload)
        await self._queue.put(payload)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._queue.put(_CLOSED)

    async def next(self) -> Message:
        """Block until the next message arrives.

        Raises:
            StopAsyncIteration: Once the source is closed and drained.
        """
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the marker for any other reader.
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> AsyncIterator[Message]:
        return self

    async def __anext__(self) -> Message:
        return await self.next()


class IterableSource:
    """Source yielding a fixed sequence of payloads or messages."""

    def __init__(self, source: str, items: Iterable[bytes | Message]) -> None:
        self.source = source
        self._items = list(items)

    async def __aiter__(self) -> AsyncIterator[Message]:
        for item in self._items:
            if isinstance(item, Message):
                yield item
            else:
                yield Message(source=self.source, payload=item)
