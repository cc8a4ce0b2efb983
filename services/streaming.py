"""Backpressured item streams fed by background tasks.

A producer coroutine pushes items into a bounded :class:`Channel`; the consumer
iterates the :class:`ItemStream` wrapping it. Closing the stream closes the
channel, and the producer stops the next time it tries to send. Producers are
never cancelled from outside.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Generic, Optional, TypeVar

from models.gmail import Page

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

DEFAULT_CAPACITY = 32
DEFAULT_HYDRATE_WIDTH = 4

_END = object()


class _Failure:
    __slots__ = ("error",)

    def __init__(self, error: Exception):
        self.error = error


class Channel(Generic[T]):
    """Bounded FIFO whose receiving side can close it."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._queue: asyncio.Queue = asyncio.Queue(capacity)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def send(self, item) -> bool:
        """Queue ``item``, waiting for room. Returns False once the receiver closed."""

        if self.closed:
            return False
        if not self._queue.full():
            self._queue.put_nowait(item)
            return True

        put = asyncio.ensure_future(self._queue.put(item))
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({put, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (put, closed):
                if not waiter.done():
                    waiter.cancel()
        return put.done() and not put.cancelled() and not self.closed

    async def receive(self):
        return await self._queue.get()

    def close(self) -> None:
        self._closed.set()
        while not self._queue.empty():
            self._queue.get_nowait()


async def _drive(produce: Callable[[Channel], Awaitable[None]], channel: Channel) -> None:
    try:
        await produce(channel)
    except Exception as exc:  # noqa: BLE001
        await channel.send(_Failure(exc))
        return
    await channel.send(_END)


class ItemStream(Generic[T]):
    """Single-pass async iterator over the items a background producer sends.

    A producer error is raised from ``__anext__`` after every item sent before
    it, and ends the stream.
    """

    def __init__(
        self,
        produce: Callable[[Channel], Awaitable[None]],
        capacity: int = DEFAULT_CAPACITY,
    ):
        self._channel: Channel = Channel(capacity)
        self._finished = False
        # The task holds only the channel; dropping the stream closes it.
        self._task = asyncio.create_task(_drive(produce, self._channel))

    def __del__(self) -> None:
        task = getattr(self, "_task", None)
        if task is not None and not task.done():
            self._channel.close()

    @property
    def producer_done(self) -> bool:
        return self._task.done()

    def __aiter__(self) -> "ItemStream[T]":
        return self

    async def __anext__(self) -> T:
        if self._finished:
            raise StopAsyncIteration
        item = await self._channel.receive()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.error
        return item

    async def aclose(self) -> None:
        self._finished = True
        self._channel.close()
        await self._task

    async def __aenter__(self) -> "ItemStream[T]":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def paginate(
    fetch_page: Callable[[Optional[str]], Awaitable[Page[T]]],
    capacity: int = DEFAULT_CAPACITY,
) -> ItemStream[T]:
    """Stream every item of a cursor-paginated listing, in order.

    ``fetch_page`` is called with ``None`` for the first page and with the
    previous page's token afterwards; a page without a token is the last one.
    """

    async def produce(channel: Channel) -> None:
        page = await fetch_page(None)
        pages = 1
        while True:
            for item in page.items:
                if not await channel.send(item):
                    LOGGER.debug("Stream closed by consumer after %s page(s)", pages)
                    return
            if not page.next_page_token:
                LOGGER.debug("Listing complete after %s page(s)", pages)
                return
            page = await fetch_page(page.next_page_token)
            pages += 1

    return ItemStream(produce, capacity)


def hydrate(
    source: ItemStream[T],
    fetch: Callable[[T], Awaitable[U]],
    width: int = DEFAULT_HYDRATE_WIDTH,
    capacity: int = DEFAULT_CAPACITY,
) -> ItemStream[U]:
    """Map ``fetch`` over ``source`` with at most ``width`` calls in flight.

    Results come out in source order even when later fetches finish first.
    """

    if width < 1:
        raise ValueError(f"width must be >= 1, got {width}")

    async def produce(channel: Channel) -> None:
        in_flight: Deque[asyncio.Task] = deque()
        try:
            async for item in source:
                in_flight.append(asyncio.create_task(fetch(item)))
                if len(in_flight) >= width:
                    if not await channel.send(await in_flight.popleft()):
                        return
            while in_flight:
                if not await channel.send(await in_flight.popleft()):
                    return
        finally:
            for task in in_flight:
                task.cancel()
            await asyncio.gather(*in_flight, return_exceptions=True)
            await source.aclose()

    return ItemStream(produce, capacity)
