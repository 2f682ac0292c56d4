"""Async channels used by a turn: tool result fan-in and the UI output stream."""

import asyncio
from dataclasses import dataclass
from typing import Generic, Literal, TypeVar

from hobbes.models import Message

T = TypeVar("T")

_CLOSED = object()

UpdateKind = Literal["text", "message", "tool_status", "permission", "removed"]


@dataclass(frozen=True)
class TurnUpdate:
    """A transcript change published to the UI while a turn runs."""

    kind: UpdateKind
    message_id: str
    text: str = ""
    message: Message | None = None


class FanInSender(Generic[T]):
    """One producer's handle on a FanIn channel."""

    def __init__(self, channel: "FanIn[T]"):
        self._channel = channel
        self._closed = False

    def send(self, item: T) -> None:
        if self._closed:
            raise RuntimeError("Fan-in sender already closed")
        self._channel._put(item)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._channel._release()


class FanIn(Generic[T]):
    """Many-producer, single-consumer channel that ends when every sender closes.

    The owner holds one implicit sender. Each producer gets its own sender via
    ``sender()``; iteration stops once the owner called ``close()`` and every
    producer sender is closed.
    """

    def __init__(self):
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._open = 1
        self._owner_closed = False
        self.sent = 0

    def sender(self) -> FanInSender[T]:
        if self._owner_closed:
            raise RuntimeError("Cannot add a sender after the owner closed the channel")
        self._open += 1
        return FanInSender(self)

    def close(self) -> None:
        """Drop the owner's sender."""
        if not self._owner_closed:
            self._owner_closed = True
            self._release()

    def _put(self, item: T) -> None:
        self.sent += 1
        self._queue.put_nowait(item)

    def _release(self) -> None:
        self._open -= 1
        if self._open == 0:
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "FanIn[T]":
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]


class TurnOutput:
    """Stream of TurnUpdates from the orchestrator to one consumer.

    The consumer may ``close()`` it at any time to signal it went away; the
    producer then sees ``send()`` return False and stops doing work no one
    observes.
    """

    def __init__(self):
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        return self._finished

    def send(self, update: TurnUpdate) -> bool:
        if self._closed or self._finished:
            return False
        self._queue.put_nowait(update)
        return True

    def close(self) -> None:
        """Consumer side: stop receiving updates."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def finish(self) -> None:
        """Producer side: no more updates will be sent."""
        if not self._finished:
            self._finished = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "TurnOutput":
        return self

    async def __anext__(self) -> TurnUpdate:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]
