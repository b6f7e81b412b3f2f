from __future__ import annotations

import logging
import random
import time
from collections.abc import AsyncIterator
from uuid import uuid4

import httpx
from fastapi import status
from fastapi.responses import JSONResponse, Response, StreamingResponse

from keepalive_proxy.adapter import StreamAdapter, TaskRegistry
from keepalive_proxy.cors import with_cors_headers
from keepalive_proxy.frames import EVENT_STREAM_HEADERS
from keepalive_proxy.settings import Settings
from keepalive_proxy.upstream import (
    InboundRequest,
    build_upstream_client,
    build_upstream_request,
    filter_response_headers,
    request_error_details,
)

logger = logging.getLogger("uvicorn.error")


class KeepaliveProxy:
    def __init__(
        self,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.client = client if client is not None else build_upstream_client(settings)
        self.tasks = TaskRegistry()
        self._rng = rng

    async def close(self) -> None:
        await self.tasks.shutdown()
        await self.client.aclose()

    def open_keepalive_stream(self, inbound: InboundRequest) -> StreamingResponse:
        adapter = StreamAdapter(
            client=self.client,
            inbound=inbound,
            upstream_host=self.settings.upstream_host,
            heartbeat_interval_seconds=self.settings.heartbeat_interval,
            tasks=self.tasks,
            cancel_upstream_on_disconnect=self.settings.cancel_upstream_on_disconnect,
            rng=self._rng,
        )
        headers = with_cors_headers(dict(EVENT_STREAM_HEADERS))
        headers["x-proxy-request-id"] = adapter.request_id
        return StreamingResponse(
            content=adapter.open(),
            status_code=status.HTTP_200_OK,
            headers=headers,
        )

    async def forward(self, inbound: InboundRequest) -> Response:
        request_id = uuid4().hex
        started = time.perf_counter()
        request = build_upstream_request(
            self.client,
            inbound,
            host=self.settings.upstream_host,
            rng=self._rng,
        )
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = request_error_details(exc)
            logger.warning(
                "proxy_request_error request_id=%s method=%s path=%s error_type=%s is_timeout=%s error=%s",
                request_id,
                inbound.method,
                inbound.path,
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            return JSONResponse(
                status_code=status.HTTP_502_BAD_GATEWAY,
                content={
                    "error": {
                        "type": "upstream_connection_error",
                        "message": (
                            "Could not reach upstream "
                            f"({details['error_type']}): {details['error']}"
                        ),
                        "error_type": details["error_type"],
                    }
                },
                headers=with_cors_headers({"x-proxy-request-id": request_id}),
            )

        logger.info(
            "proxy_response request_id=%s method=%s path=%s status=%d connect_ms=%.2f",
            request_id,
            inbound.method,
            inbound.path,
            upstream.status_code,
            (time.perf_counter() - started) * 1000.0,
        )

        async def body_iterator() -> AsyncIterator[bytes]:
            try:
                if upstream.is_stream_consumed:
                    body = await upstream.aread()
                    if body:
                        yield body
                else:
                    async for chunk in upstream.aiter_raw():
                        yield chunk
            finally:
                await upstream.aclose()

        response = StreamingResponse(
            content=body_iterator(),
            status_code=upstream.status_code,
        )
        # Appended pair by pair so repeated headers such as set-cookie survive.
        for name, value in filter_response_headers(upstream.headers):
            response.headers.append(name, value)
        with_cors_headers(response.headers)
        response.headers["x-proxy-request-id"] = request_id
        return response
