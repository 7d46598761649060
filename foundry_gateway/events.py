"""
Server-Sent-Events plumbing.

An EventChannel is an append-only queue of JSON payloads that a route hands
to StreamingResponse. Producers (residency, downloads) write to it from a
background task; `run()` guarantees the stream always ends with a terminal
event, even when the producer blows up.
"""

import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, List

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}

_CLOSE = object()
_tasks = set()


def encode_event(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class EventChannel:
    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.history: List[dict] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, payload: dict) -> None:
        if self._closed:
            logger.debug("Dropping event for closed stream: %s", payload)
            return
        self.history.append(payload)
        self._queue.put_nowait(payload)

    def log(self, message: str, **extra) -> None:
        self.send({"log": message, **extra})

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSE)

    async def frames(self) -> AsyncIterator[str]:
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSE:
                    return
                yield encode_event(item)
        finally:
            # client went away or stream finished; later sends are dropped
            self._closed = True

    def run(self, producer: Awaitable) -> "asyncio.Task":
        """Drive producer in the background, then close the stream."""

        async def _guarded():
            try:
                await producer
            except Exception as e:
                logger.exception("Event producer failed")
                self.send({"error": str(e) or e.__class__.__name__})
            finally:
                self.close()

        task = asyncio.create_task(_guarded())
        _tasks.add(task)
        task.add_done_callback(_tasks.discard)
        return task
