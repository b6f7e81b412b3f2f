from __future__ import annotations

import argparse
from collections.abc import Callable
from typing import cast

import uvicorn

APP_IMPORT_PATH = "keepalive_proxy.main:app"


def cmd_serve(args: argparse.Namespace) -> int:
    uvicorn.run(
        APP_IMPORT_PATH,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        proxy_headers=True,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keepalive-proxy",
        description="Gemini reverse proxy with keepalive streaming and key rotation.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_cmd = subparsers.add_parser("serve", help="Run the proxy under uvicorn.")
    serve_cmd.add_argument("--host", default="127.0.0.1")
    serve_cmd.add_argument("--port", type=int, default=8000)
    serve_cmd.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug", "trace"],
    )
    serve_cmd.set_defaults(handler=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except Exception as exc:  # pragma: no cover - surfaced to the shell
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
