"""SSE response construction for the chat API."""

from __future__ import annotations

from typing import AsyncIterable, Awaitable, Callable, Iterable

from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask


def build_streaming_response(
    generator: Iterable[bytes] | AsyncIterable[bytes],
    on_close: Callable[[], Awaitable[None]] | None = None,
) -> StreamingResponse:
    # on_close also runs when the client leaves before the first chunk is pulled
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
        background=BackgroundTask(on_close) if on_close is not None else None,
    )
