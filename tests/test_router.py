from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx

from keepalive_proxy.frames import DONE_FRAME, HEARTBEAT_FRAME
from tests.client_test_utils import (
    UPSTREAM_HOST,
    ChunkedBody,
    build_test_client,
    install_upstream,
    split_frames,
)

STREAM_PATH = "/v1beta/models/gemini-pro:streamGenerateContent"
CORS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET, POST, OPTIONS",
    "access-control-allow-headers": "Content-Type, Authorization",
}


def _assert_cors(headers: httpx.Headers) -> None:
    for name, value in CORS.items():
        assert headers.get_list(name) == [value]


def test_preflight_returns_static_cors_response(monkeypatch: Any) -> None:
    calls: list[httpx.Request] = []

    with build_test_client(monkeypatch) as client:
        install_upstream(client, lambda request: calls.append(request) or httpx.Response(200))
        response = client.options(STREAM_PATH)

    assert response.status_code == 204
    assert response.content == b""
    _assert_cors(response.headers)
    assert calls == []


def test_plain_request_is_forwarded_with_cors_regardless_of_status(monkeypatch: Any) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            404,
            json={"error": {"code": 404}},
            headers={"Access-Control-Allow-Origin": "https://example.com"},
        )

    with build_test_client(monkeypatch) as client:
        install_upstream(client, handler)
        response = client.get("/v1beta/models", params={"key": "a,b", "pageSize": "3"})

    assert response.status_code == 404
    assert response.json() == {"error": {"code": 404}}
    _assert_cors(response.headers)
    assert len(seen) == 1
    assert seen[0].url.host == UPSTREAM_HOST
    assert seen[0].url.scheme == "https"
    assert seen[0].url.path == "/v1beta/models"
    assert seen[0].url.params["key"] in {"a", "b"}
    assert seen[0].url.params["pageSize"] == "3"


def test_non_streaming_post_forwards_body(monkeypatch: Any) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"candidates": []})

    with build_test_client(monkeypatch) as client:
        install_upstream(client, handler)
        response = client.post(
            "/v1beta/models/gemini-pro:generateContent?key=k",
            json={"contents": []},
        )

    assert response.status_code == 200
    assert response.json() == {"candidates": []}
    assert json.loads(seen[0].content) == {"contents": []}
    assert seen[0].url.path.endswith(":generateContent")


def test_streaming_request_gets_keepalive_stream(monkeypatch: Any) -> None:
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        await asyncio.sleep(0.1)
        return httpx.Response(200, json={"x": 1})

    with build_test_client(monkeypatch) as client:
        install_upstream(client, handler)
        response = client.post(f"{STREAM_PATH}?alt=sse&key=k1,k2", json={"contents": []})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    _assert_cors(response.headers)

    frames = split_frames(response.content)
    assert frames.count(HEARTBEAT_FRAME) >= 1
    first_terminal = next(i for i, frame in enumerate(frames) if frame != HEARTBEAT_FRAME)
    assert frames[first_terminal:] == [b'data: {"x":1}\n\n', DONE_FRAME]

    assert seen[0].url.path == "/v1beta/models/gemini-pro:generateContent"
    assert seen[0].url.params["alt"] == "sse"
    assert seen[0].url.params["key"] in {"k1", "k2"}


def test_streaming_request_upstream_rejection(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        install_upstream(client, lambda request: httpx.Response(429, text="rate limited"))
        response = client.post(f"{STREAM_PATH}?key=k", json={})

    assert response.status_code == 200
    frames = [frame for frame in split_frames(response.content) if frame != HEARTBEAT_FRAME]
    assert len(frames) == 2
    error = json.loads(frames[0][len(b"data: ") :])["error"]
    assert "429" in error["message"]
    assert error["details"] == "rate limited"
    assert frames[1] == DONE_FRAME


def test_keepalive_disabled_forwards_streaming_path_unchanged(monkeypatch: Any) -> None:
    seen: list[httpx.Request] = []
    upstream_body = b'data: {"candidates":[]}\n\n'

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        await asyncio.sleep(0.05)
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=upstream_body
        )

    with build_test_client(monkeypatch, KEEPALIVE="false") as client:
        install_upstream(client, handler)
        response = client.post(f"{STREAM_PATH}?alt=sse&key=k", json={})

    assert response.status_code == 200
    assert response.content == upstream_body
    assert HEARTBEAT_FRAME not in response.content
    _assert_cors(response.headers)
    assert seen[0].url.path == STREAM_PATH


def test_forward_transport_error_returns_bad_gateway(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route to host", request=request)

    with build_test_client(monkeypatch) as client:
        install_upstream(client, handler)
        response = client.get("/v1beta/models?key=k")

    assert response.status_code == 502
    body = response.json()
    assert body["error"]["type"] == "upstream_connection_error"
    assert body["error"]["error_type"] == "ConnectError"
    _assert_cors(response.headers)


def test_forward_streams_unread_upstream_body(monkeypatch: Any) -> None:
    body = ChunkedBody(b'data: {"n":1}\n\n', b'data: {"n":2}\n\n')

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, stream=body
        )

    with build_test_client(monkeypatch, KEEPALIVE="false") as client:
        install_upstream(client, handler)
        response = client.post(f"{STREAM_PATH}?alt=sse&key=k", json={})

    assert response.status_code == 200
    assert response.content == b'data: {"n":1}\n\ndata: {"n":2}\n\n'
    assert body.reads == 1
    _assert_cors(response.headers)


def test_forward_keeps_repeated_response_headers(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers=[
                ("set-cookie", "a=1"),
                ("set-cookie", "b=2"),
                ("connection", "keep-alive"),
            ],
            content=b"ok",
        )

    with build_test_client(monkeypatch) as client:
        install_upstream(client, handler)
        response = client.get("/v1beta/models?key=k")

    assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]
    assert response.content == b"ok"
    _assert_cors(response.headers)


def test_any_method_is_forwarded_with_cors(monkeypatch: Any) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.method)
        return httpx.Response(200, content=b"")

    with build_test_client(monkeypatch) as client:
        install_upstream(client, handler)
        trace = client.request("TRACE", "/v1beta/models?key=k")
        propfind = client.request("PROPFIND", "/v1beta/models?key=k")

    assert seen == ["TRACE", "PROPFIND"]
    for response in (trace, propfind):
        assert response.status_code == 200
        _assert_cors(response.headers)


def test_install_upstream_closes_replaced_client(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        first = install_upstream(client, lambda request: httpx.Response(200))
        second = install_upstream(client, lambda request: httpx.Response(200))

    assert first.is_closed
    assert second.is_closed
