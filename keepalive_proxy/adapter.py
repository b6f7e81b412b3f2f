from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import AsyncIterator
from enum import Enum
from uuid import uuid4

import httpx

from keepalive_proxy.frames import (
    DONE_FRAME,
    encode_event,
    internal_error_payload,
    upstream_error_payload,
)
from keepalive_proxy.heartbeat import HeartbeatEmitter
from keepalive_proxy.streams import CompletionFlag, OutputStream, StreamClosedError
from keepalive_proxy.upstream import (
    InboundRequest,
    build_upstream_request,
    is_event_stream_content_type,
    request_error_details,
)

logger = logging.getLogger("uvicorn.error")


class AdapterState(str, Enum):
    OPEN = "open"
    STREAMING = "streaming"
    DONE = "done"


class TaskRegistry:
    """Holds strong references to detached upstream tasks until they finish."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def track(self, task: asyncio.Task[None]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "keepalive_task_failed task=%s error_type=%s error=%s",
                task.get_name(),
                exc.__class__.__name__,
                exc,
            )

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class UpstreamInvoker:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        inbound: InboundRequest,
        upstream_host: str,
        stream: OutputStream,
        completion: CompletionFlag,
        heartbeat: HeartbeatEmitter,
        request_id: str,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._inbound = inbound
        self._upstream_host = upstream_host
        self._stream = stream
        self._completion = completion
        self._heartbeat = heartbeat
        self._request_id = request_id
        self._rng = rng

    async def run(self) -> None:
        started = time.perf_counter()
        upstream: httpx.Response | None = None
        try:
            try:
                request = build_upstream_request(
                    self._client,
                    self._inbound,
                    host=self._upstream_host,
                    adapt=True,
                    rng=self._rng,
                )
                upstream = await self._client.send(request, stream=True)
                self._complete()
                logger.info(
                    "keepalive_upstream_response request_id=%s status=%d latency_ms=%.2f content_type=%s",
                    self._request_id,
                    upstream.status_code,
                    (time.perf_counter() - started) * 1000.0,
                    upstream.headers.get("content-type", ""),
                )
                await self._relay(upstream)
            except StreamClosedError:
                raise
            except Exception as exc:
                self._complete()
                self._log_failure(exc)
                self._ensure_open()
                await self._stream.write(encode_event(internal_error_payload(exc)))
            finally:
                if upstream is not None:
                    await upstream.aclose()
            self._ensure_open()
            await self._stream.write(DONE_FRAME)
        except StreamClosedError:
            self._complete()
            logger.info(
                "keepalive_result_discarded request_id=%s reason=stream_closed",
                self._request_id,
            )
        finally:
            self._complete()
            await self._close_stream()

    def _complete(self) -> None:
        # Must run before any terminal frame so no heartbeat can follow it.
        self._completion.set()
        self._heartbeat.stop()

    def _ensure_open(self) -> None:
        # A cancelled stream gets no further reads or terminal writes.
        if self._stream.closed:
            raise StreamClosedError("stream closed by client")

    async def _relay(self, upstream: httpx.Response) -> None:
        self._ensure_open()
        if not upstream.is_success:
            await upstream.aread()
            await self._stream.write(
                encode_event(
                    upstream_error_payload(
                        upstream.status_code,
                        upstream.reason_phrase,
                        upstream.text,
                    )
                )
            )
            return

        if is_event_stream_content_type(upstream.headers.get("content-type")):
            async for chunk in upstream.aiter_text():
                self._ensure_open()
                if chunk:
                    await self._stream.write(chunk.encode("utf-8"))
            return

        await upstream.aread()
        await self._stream.write(encode_event(upstream.json()))

    def _log_failure(self, exc: Exception) -> None:
        if isinstance(exc, httpx.RequestError):
            details = request_error_details(exc)
            logger.warning(
                "keepalive_upstream_error request_id=%s error_type=%s is_timeout=%s url=%s error=%s",
                self._request_id,
                details["error_type"],
                details["is_timeout"],
                details.get("request_url"),
                details["error"],
            )
            return
        logger.warning(
            "keepalive_internal_error request_id=%s error_type=%s error=%s",
            self._request_id,
            exc.__class__.__name__,
            exc,
        )

    async def _close_stream(self) -> None:
        try:
            await self._stream.close()
        except StreamClosedError as exc:
            log = logger.debug if self._stream.cancelled else logger.warning
            log(
                "keepalive_stream_close_failed request_id=%s error=%s",
                self._request_id,
                exc,
            )


class StreamAdapter:
    """Serves one ``:streamGenerateContent`` request as a keepalive stream.

    ``open()`` arms the heartbeat timer, launches the upstream invoker as a
    tracked background task and returns the frame iterator for the response
    body without waiting on the upstream. The adapter walks
    ``OPEN -> STREAMING -> DONE`` once; ``DONE`` is reached either when the
    invoker closes the stream or when the client disconnects.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        inbound: InboundRequest,
        upstream_host: str,
        heartbeat_interval_seconds: float,
        tasks: TaskRegistry,
        cancel_upstream_on_disconnect: bool = False,
        request_id: str | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.request_id = request_id or uuid4().hex
        self.state = AdapterState.OPEN
        self.stream = OutputStream()
        self.completion = CompletionFlag()
        self.heartbeat = HeartbeatEmitter(
            stream=self.stream,
            completion=self.completion,
            interval_seconds=heartbeat_interval_seconds,
            request_id=self.request_id,
        )
        self.invoker = UpstreamInvoker(
            client=client,
            inbound=inbound,
            upstream_host=upstream_host,
            stream=self.stream,
            completion=self.completion,
            heartbeat=self.heartbeat,
            request_id=self.request_id,
            rng=rng,
        )
        self._tasks = tasks
        self._cancel_upstream_on_disconnect = cancel_upstream_on_disconnect
        self._task: asyncio.Task[None] | None = None
        self._path = inbound.path
        self.stream.on_cancel(self._on_cancel)

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    def open(self) -> AsyncIterator[bytes]:
        if self.state is not AdapterState.OPEN:
            raise RuntimeError(f"stream adapter is {self.state.value}, not open")
        frames = self.stream.frames()
        self.heartbeat.start()
        self._task = asyncio.create_task(
            self._drive(), name=f"keepalive-upstream-{self.request_id}"
        )
        self._tasks.track(self._task)
        self.state = AdapterState.STREAMING
        logger.info(
            "keepalive_stream_opened request_id=%s path=%s",
            self.request_id,
            self._path,
        )
        return frames

    async def _drive(self) -> None:
        try:
            await self.invoker.run()
        finally:
            self._finish("completed")

    def _on_cancel(self, reason: str) -> None:
        self.completion.set()
        self.heartbeat.stop()
        if self.state is AdapterState.DONE:
            return
        logger.info(
            "keepalive_client_disconnected request_id=%s reason=%s heartbeats=%d",
            self.request_id,
            reason,
            self.heartbeat.frames_sent,
        )
        task = self._task
        if self._cancel_upstream_on_disconnect and task is not None and not task.done():
            task.cancel()
        self._finish("cancelled")

    def _finish(self, outcome: str) -> None:
        if self.state is AdapterState.DONE:
            return
        self.state = AdapterState.DONE
        logger.info(
            "keepalive_stream_done request_id=%s outcome=%s heartbeats=%d",
            self.request_id,
            outcome,
            self.heartbeat.frames_sent,
        )
