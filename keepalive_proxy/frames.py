"""Server-sent event frames written to adapted streams."""

from __future__ import annotations

import json
from typing import Any

DONE_FRAME = b"data: [DONE]\n\n"

EVENT_STREAM_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def encode_event(payload: Any) -> bytes:
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"data: {data}\n\n".encode("utf-8")


def heartbeat_payload() -> dict[str, Any]:
    # Shaped like a normal generateContent chunk so clients render nothing.
    return {
        "candidates": [
            {
                "content": {"parts": [{"text": "\n\n"}], "role": "model"},
                "finishReason": "STOP",
                "index": 0,
                "safetyRatings": [],
            }
        ],
        "usageMetadata": {
            "promptTokenCount": 0,
            "candidatesTokenCount": 0,
            "totalTokenCount": 0,
        },
    }


HEARTBEAT_FRAME = encode_event(heartbeat_payload())


def upstream_error_payload(status_code: int, reason: str, body: str) -> dict[str, Any]:
    return {
        "error": {
            "message": f"API Error: {status_code} {reason}".rstrip(),
            "details": body,
        }
    }


def internal_error_payload(exc: BaseException) -> dict[str, Any]:
    return {
        "error": {
            "message": "Proxy internal error",
            "details": str(exc) or exc.__class__.__name__,
        }
    }
