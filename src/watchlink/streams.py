"""Cancellable fan-out notification streams."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Generic, TypeVar

from .exceptions import StreamClosedError

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BUFFER_SIZE = 32


class _Failure:
    """Error delivered in-band to a consumer."""

    __slots__ = ("error",)

    def __init__(self, error: BaseException):
        self.error = error


class NotificationStream(Generic[T]):
    """Independently drainable sequence of values for one consumer.

    The buffer is bounded; when full the oldest item is dropped so a slow
    consumer never stalls the producer. The producer ends the stream with
    end(); the consumer cancels it with close(), which releases any
    transport-side resources before returning.

    Usage:
        async with await client.subscribe(Service.HEART_RATE) as stream:
            async for sample in stream:
                print(sample.bpm)
    """

    def __init__(
            self,
            key: Any = None,
            maxsize: int = DEFAULT_BUFFER_SIZE,
            release: Callable[[NotificationStream[T]], Awaitable[None]] | None = None,
    ):
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got {maxsize}")
        self.key = key
        self.maxsize = maxsize
        self.dropped = 0
        self._buffer: deque[T | _Failure] = deque(maxlen=maxsize)
        self._wakeup = asyncio.Event()
        self._ended = False
        self._release = release

    @property
    def closed(self) -> bool:
        """True once the stream has ended or been closed."""
        return self._ended

    def __len__(self) -> int:
        return len(self._buffer)

    def push(self, item: T) -> None:
        """Deliver an item (producer side)."""
        self._append(item)

    def push_error(self, error: BaseException) -> None:
        """Deliver an error; the consumer's next get() raises it."""
        self._append(_Failure(error))

    def _append(self, item: T | _Failure) -> None:
        if self._ended:
            return
        if len(self._buffer) == self.maxsize:
            self.dropped += 1
            _LOGGER.debug("Stream %s full, dropping oldest item (%d dropped)", self.key, self.dropped)
        self._buffer.append(item)
        self._wakeup.set()

    def end(self) -> None:
        """Signal end-of-stream (producer side). Buffered items stay readable."""
        self._ended = True
        self._release = None
        self._wakeup.set()

    async def get(self) -> T:
        """Wait for the next item.

        Raises:
            StreamClosedError: If the stream ended and the buffer is drained
        """
        while not self._buffer:
            if self._ended:
                raise StreamClosedError(f"Stream {self.key} ended")
            self._wakeup.clear()
            await self._wakeup.wait()

        item = self._buffer.popleft()
        if isinstance(item, _Failure):
            raise item.error
        return item

    async def close(self) -> None:
        """Cancel the subscription (consumer side). Idempotent."""
        release, self._release = self._release, None
        self._buffer.clear()
        self._ended = True
        self._wakeup.set()
        if release is not None:
            await release(self)

    def __aiter__(self) -> NotificationStream[T]:
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except StreamClosedError:
            raise StopAsyncIteration from None

    async def __aenter__(self) -> NotificationStream[T]:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class Broadcaster(Generic[T]):
    """Fan-out of published values to any number of streams.

    Backs the session-status and update-progress streams.
    """

    def __init__(self, name: str, maxsize: int = DEFAULT_BUFFER_SIZE, replay_last: bool = False):
        self.name = name
        self.maxsize = maxsize
        self.replay_last = replay_last
        self._streams: list[NotificationStream[T]] = []
        self._last: T | None = None

    def __len__(self) -> int:
        return len(self._streams)

    @property
    def last(self) -> T | None:
        return self._last

    def subscribe(self, maxsize: int | None = None) -> NotificationStream[T]:
        """Open a new consumer stream."""
        stream: NotificationStream[T] = NotificationStream(
            key=self.name,
            maxsize=maxsize or self.maxsize,
            release=self._release,
        )
        if self.replay_last and self._last is not None:
            stream.push(self._last)
        self._streams.append(stream)
        return stream

    def publish(self, item: T) -> None:
        self._last = item
        for stream in list(self._streams):
            stream.push(item)

    def close(self) -> None:
        """End every open stream."""
        streams, self._streams = self._streams, []
        for stream in streams:
            stream.end()

    async def _release(self, stream: NotificationStream[T]) -> None:
        if stream in self._streams:
            self._streams.remove(stream)
