"""Streaming bus: many registered producers, explicit close, sentinel on end-of-stream."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator

import structlog

from ..errors import Conflict
from .events import StreamEvent

logger = structlog.get_logger(__name__)

END_OF_STREAM = None


class Producer:
    """Registered publishing handle; usable directly as an agent run handler."""

    def __init__(self, bus: "StreamBus", name: str) -> None:
        self._bus = bus
        self.name = name

    async def __call__(self, event: StreamEvent) -> None:
        await self._bus._publish(self, event)

    async def publish(self, event: StreamEvent) -> None:
        await self._bus._publish(self, event)

    def deregister(self) -> None:
        self._bus.deregister(self)

    async def __aenter__(self) -> "Producer":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.deregister()


class StreamBus:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._producers: set[Producer] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def producer_count(self) -> int:
        return len(self._producers)

    def producer(self, name: str) -> Producer:
        if self._closed:
            raise Conflict("stream bus is closed")
        producer = Producer(self, name)
        self._producers.add(producer)
        self._idle.clear()
        return producer

    def deregister(self, producer: Producer) -> None:
        self._producers.discard(producer)
        if not self._producers:
            self._idle.set()

    async def _publish(self, producer: Producer, event: StreamEvent) -> None:
        if self._closed:
            raise Conflict(f"stream bus is closed; dropped {event.kind.value} from {producer.name}")
        if producer not in self._producers:
            raise Conflict(f"producer {producer.name} is not registered")
        await self._queue.put(event)

    async def receive(self) -> StreamEvent | None:
        """Next event, or ``END_OF_STREAM`` once the bus is closed and drained."""
        item = await self._queue.get()
        if item is END_OF_STREAM:
            # leave the sentinel for any other pending receiver
            self._queue.put_nowait(END_OF_STREAM)
        return item

    def close(self) -> None:
        if self._closed:
            raise Conflict("stream bus already closed")
        self._closed = True
        if self._producers:
            logger.warning("bus.closed_with_producers", producers=sorted(p.name for p in self._producers))
        self._queue.put_nowait(END_OF_STREAM)

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self.receive()
            if event is END_OF_STREAM:
                return
            yield event


__all__ = ["END_OF_STREAM", "Producer", "StreamBus"]
