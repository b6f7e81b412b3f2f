from __future__ import annotations

from collections.abc import MutableMapping

from fastapi import status
from fastapi.responses import Response

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


def with_cors_headers(headers: MutableMapping[str, str]) -> MutableMapping[str, str]:
    cors_names = {name.lower() for name in CORS_HEADERS}
    for existing in {name for name in headers if name.lower() in cors_names}:
        del headers[existing]
    for name, value in CORS_HEADERS.items():
        headers[name] = value
    return headers


def preflight_response() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=dict(CORS_HEADERS))
