from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import cast

from specstudio.models import StreamEvent

_CLOSED = object()


class StreamChannel:
    """Ordered, single-consumer delivery of one spawn's stream events.

    The producer publishes without blocking. The channel ends after the
    ``complete`` event, or as soon as the consumer closes it; anything still
    queued at that point is discarded.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False
        self._completed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def completed(self) -> bool:
        return self._completed

    def publish(self, event: StreamEvent) -> bool:
        if self._closed or self._completed:
            return False
        if event.type == "complete":
            self._completed = True
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake a consumer blocked in get().
        self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while not self._closed:
            item = await self._queue.get()
            if item is _CLOSED or self._closed:
                return
            event = cast(StreamEvent, item)
            yield event
            if event.type == "complete":
                self._closed = True
                return
