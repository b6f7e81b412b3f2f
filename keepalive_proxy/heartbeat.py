from __future__ import annotations

import asyncio
import logging

from keepalive_proxy.frames import HEARTBEAT_FRAME
from keepalive_proxy.streams import CompletionFlag, OutputStream, StreamClosedError

logger = logging.getLogger("uvicorn.error")


class HeartbeatEmitter:
    def __init__(
        self,
        *,
        stream: OutputStream,
        completion: CompletionFlag,
        interval_seconds: float,
        frame: bytes = HEARTBEAT_FRAME,
        request_id: str = "",
    ) -> None:
        self._stream = stream
        self._completion = completion
        self._interval_seconds = interval_seconds
        self._frame = frame
        self._request_id = request_id
        self._task: asyncio.Task[None] | None = None
        self._stopped = False
        self.frames_sent = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> None:
        if self._stopped or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="keepalive-heartbeat")

    def stop(self) -> None:
        # Stopping is permanent for this emitter.
        self._stopped = True
        task = self._task
        if task is None or task.done():
            return
        if task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self._interval_seconds)
            if self._stopped or self._completion.is_set:
                return
            try:
                await self._stream.write(self._frame)
            except StreamClosedError:
                logger.debug(
                    "keepalive_heartbeat_stopped request_id=%s reason=stream_closed",
                    self._request_id,
                )
                self._stopped = True
                return
            self.frames_sent += 1
