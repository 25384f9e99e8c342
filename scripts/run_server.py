"""Launch the ChatGate server."""

from __future__ import annotations

import argparse
import os
import sys

import uvicorn

# Ensure project root is on sys.path (so imports work when run directly)
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from chatgate.config.settings import settings  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the ChatGate server.")
    parser.add_argument("--host", type=str, default=settings.host, help=f"Host to bind (default: {settings.host})")
    parser.add_argument("--port", type=int, default=settings.port, help=f"Port to bind (default: {settings.port})")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development (default: off)")
    parser.add_argument(
        "--workers",
        type=int,
        default=int(os.environ.get("WORKERS", "1")),
        help="Number of worker processes (default: 1)",
    )
    args = parser.parse_args()

    uvicorn.run(
        "chatgate.core.gateway:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=args.workers if not args.reload else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
