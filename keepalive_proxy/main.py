from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import Response
from starlette.routing import Route

from keepalive_proxy.cors import preflight_response
from keepalive_proxy.proxy import KeepaliveProxy
from keepalive_proxy.settings import get_settings
from keepalive_proxy.upstream import InboundRequest, is_streaming_path

app = FastAPI(
    title="Gemini Keepalive Proxy",
    description=(
        "Reverse proxy for the Gemini API that keeps streamGenerateContent "
        "connections alive with heartbeat events and rotates API keys."
    ),
    version="0.1.0",
    # Every path belongs to the upstream API.
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

logger = logging.getLogger("uvicorn.error")


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    app.state.settings = settings
    app.state.proxy = KeepaliveProxy(settings)
    logger.info(
        "startup complete upstream_host=%s keepalive=%s heartbeat_interval_s=%.2f "
        "cancel_upstream_on_disconnect=%s",
        settings.upstream_host,
        settings.keepalive,
        settings.heartbeat_interval,
        settings.cancel_upstream_on_disconnect,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    proxy: KeepaliveProxy | None = getattr(app.state, "proxy", None)
    if proxy is not None:
        await proxy.close()
    logger.info("shutdown complete")


async def route(request: Request) -> Response:
    if request.method == "OPTIONS":
        return preflight_response()

    proxy: KeepaliveProxy = app.state.proxy
    inbound = await InboundRequest.from_request(request)
    if proxy.settings.keepalive and is_streaming_path(inbound.path):
        return proxy.open_keepalive_stream(inbound)
    return await proxy.forward(inbound)


# No method list: every method, including ones FastAPI has no decorator for,
# reaches the router and gets CORS headers.
app.router.routes.append(Route("/{path:path}", endpoint=route))
