from __future__ import annotations

import random
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx
from fastapi import Request

from keepalive_proxy.credentials import CREDENTIAL_PARAM, select_credential
from keepalive_proxy.settings import Settings

STREAMING_SUFFIX = ":streamGenerateContent"
NON_STREAMING_SUFFIX = ":generateContent"

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}
# httpx derives these from the outbound URL and body.
_RECOMPUTED_REQUEST_HEADERS = {"host"}

QueryParams = Mapping[str, str] | Iterable[tuple[str, str]]


def is_streaming_path(path: str) -> bool:
    return path.endswith(STREAMING_SUFFIX)


def to_non_streaming_path(path: str) -> str:
    if path.endswith(STREAMING_SUFFIX):
        return path[: -len(STREAMING_SUFFIX)] + NON_STREAMING_SUFFIX
    return path.replace(STREAMING_SUFFIX, NON_STREAMING_SUFFIX, 1)


def _query_items(query_params: QueryParams) -> list[tuple[str, str]]:
    multi_items = getattr(query_params, "multi_items", None)
    if callable(multi_items):
        return [(str(k), str(v)) for k, v in multi_items()]
    if isinstance(query_params, Mapping):
        return [(str(k), str(v)) for k, v in query_params.items()]
    return [(str(k), str(v)) for k, v in query_params]


def resolve_query_params(
    query_params: QueryParams,
    rng: random.Random | None = None,
) -> list[tuple[str, str]]:
    items = _query_items(query_params)
    positions = [i for i, (name, _) in enumerate(items) if name == CREDENTIAL_PARAM]
    if not positions:
        return items

    raw = items[positions[0]][1]
    selected = select_credential(raw, rng=rng)
    if selected == raw:
        return items

    # A rotated key replaces every credential entry with a single one.
    resolved = [item for item in items if item[0] != CREDENTIAL_PARAM]
    resolved.insert(positions[0], (CREDENTIAL_PARAM, selected or ""))
    return resolved


def build_upstream_url(
    path: str,
    query_params: QueryParams,
    host: str,
    rng: random.Random | None = None,
) -> str:
    query = urlencode(resolve_query_params(query_params, rng=rng))
    return f"https://{host}{path}?{query}"


def filter_request_headers(
    headers: Mapping[str, str] | Iterable[tuple[str, str]],
) -> list[tuple[str, str]]:
    pairs = headers.items() if isinstance(headers, Mapping) else headers
    dropped = HOP_BY_HOP_HEADERS | _RECOMPUTED_REQUEST_HEADERS
    return [(name, value) for name, value in pairs if name.lower() not in dropped]


def filter_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    return [
        (name, value)
        for name, value in headers.multi_items()
        if name.lower() not in HOP_BY_HOP_HEADERS
    ]


def is_event_stream_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    return "text/event-stream" in content_type.lower()


def request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    error_message = str(exc).strip() or error_repr
    error_type = exc.__class__.__name__.strip() or "RequestError"
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": error_type,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        request = exc.request
    except RuntimeError:
        request = None
    if isinstance(request, httpx.Request):
        details["request_method"] = request.method
        details["request_url"] = _redact_credential(request.url)
    return details


def _redact_credential(url: httpx.URL) -> str:
    if CREDENTIAL_PARAM not in url.params:
        return str(url)
    return str(url.copy_set_param(CREDENTIAL_PARAM, "***"))


def build_upstream_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, settings.upstream_connect_timeout_seconds),
            read=max(0.1, settings.upstream_read_timeout_seconds),
            write=max(0.1, settings.upstream_write_timeout_seconds),
            pool=max(0.1, settings.upstream_pool_timeout_seconds),
        ),
        limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
        http2=_can_enable_http2(),
        follow_redirects=True,
    )


def _can_enable_http2() -> bool:
    try:
        import h2  # noqa: F401
    except Exception:
        return False
    return True


@dataclass(slots=True)
class InboundRequest:
    method: str
    path: str
    query_params: list[tuple[str, str]]
    headers: list[tuple[str, str]]
    body: bytes | None = None

    @classmethod
    async def from_request(cls, request: Request) -> InboundRequest:
        # Buffered up front: the adapted call runs after the response has
        # started, when the ASGI receive channel belongs to the response.
        body = await request.body()
        return cls(
            method=request.method,
            path=request.url.path,
            query_params=request.query_params.multi_items(),
            headers=request.headers.items(),
            body=body or None,
        )


def build_upstream_request(
    client: httpx.AsyncClient,
    inbound: InboundRequest,
    *,
    host: str,
    adapt: bool = False,
    rng: random.Random | None = None,
) -> httpx.Request:
    path = to_non_streaming_path(inbound.path) if adapt else inbound.path
    headers = filter_request_headers(inbound.headers)
    if adapt:
        # The adapted body is decoded locally, so let httpx negotiate encodings.
        headers = [
            (name, value)
            for name, value in headers
            if name.lower() != "accept-encoding"
        ]
    return client.build_request(
        method=inbound.method,
        url=build_upstream_url(path, inbound.query_params, host, rng=rng),
        headers=headers,
        content=inbound.body,
    )
