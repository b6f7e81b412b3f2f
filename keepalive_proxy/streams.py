from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

logger = logging.getLogger("uvicorn.error")


class StreamClosedError(RuntimeError):
    pass


class CompletionFlag:
    """One-way boolean shared by the heartbeat timer and the upstream invoker."""

    __slots__ = ("_is_set",)

    def __init__(self) -> None:
        self._is_set = False

    @property
    def is_set(self) -> bool:
        return self._is_set

    def set(self) -> bool:
        """Set the flag; returns True only for the call that flipped it."""
        if self._is_set:
            return False
        self._is_set = True
        return True


class OutputStream:
    """Append-only frame channel between the adapter and the HTTP response.

    Producers call ``write`` and ``close``; the response body iterates
    ``frames()``. When the consumer goes away before the close marker is
    drained, the stream is cancelled and the registered callbacks run once.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._closed = False
        self._cancelled = False
        self._drained = False
        self._cancel_callbacks: list[Callable[[str], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def on_cancel(self, callback: Callable[[str], None]) -> None:
        self._cancel_callbacks.append(callback)

    async def write(self, frame: bytes) -> None:
        if self._closed:
            raise StreamClosedError("write to closed stream")
        await self._queue.put(frame)

    async def close(self) -> None:
        if self._closed:
            raise StreamClosedError("stream already closed")
        self._closed = True
        await self._queue.put(None)

    def cancel(self, reason: str) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        for callback in self._cancel_callbacks:
            try:
                callback(reason)
            except Exception as exc:
                logger.warning("output_stream_cancel_callback_failed error=%s", exc)

    async def frames(self) -> AsyncIterator[bytes]:
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    self._drained = True
                    return
                yield frame
        finally:
            if not self._drained:
                self.cancel("client disconnected")
