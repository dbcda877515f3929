"""Single-producer/single-consumer channel for streamed flow chunks."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Generic, TypeVar

T = TypeVar("T")

_CLOSED = object()


class ChannelClosedError(RuntimeError):
    """A chunk was sent after the channel was closed."""


class StreamingChannel(Generic[T]):
    """
    Unbounded queue bridging a flow body's pushed chunks to an async consumer.

    The producer calls send() for each chunk and close() once. The consumer
    iterates with ``async for`` until the channel is closed and drained.
    Iteration is one-shot: once the close marker has been consumed, further
    iteration ends immediately.

    Usage:
        channel = StreamingChannel()
        channel.send(1)
        channel.close()
        async for chunk in channel:
            ...
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._drained = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, chunk: T) -> None:
        """Enqueue a chunk. Never blocks."""
        if self._closed:
            raise ChannelClosedError("Cannot send on a closed channel")
        self._queue.put_nowait(chunk)

    def close(self) -> None:
        """Signal that no more chunks will be sent. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[T]:
        while not self._drained:
            item = await self._queue.get()
            if item is _CLOSED:
                self._drained = True
                return
            yield item

    def __repr__(self) -> str:
        return f"StreamingChannel(pending={self._queue.qsize()}, closed={self._closed})"
