"""
Byte-for-byte relay of a provider stream to the client.

One relay serves one request. Chunks are forwarded as they arrive and never
re-buffered; the pull-based generator means a slow client slows the upstream
read instead of growing memory. A client disconnect is noticed before each
upstream read. A read that is already waiting ends when Starlette cancels the
response task.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import AsyncGenerator, Awaitable, Callable

from chatgate.core.errors import UpstreamStreamError
from chatgate.providers.base import UpstreamStream
from chatgate.util.logger import get_logger

logger = get_logger("relay")

DONE_MARKER = b"data: [DONE]"


class RelayState(str, Enum):
    IDLE = "idle"
    PROVIDER_SELECTED = "provider_selected"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"


_TRANSITIONS: dict[RelayState, frozenset[RelayState]] = {
    RelayState.IDLE: frozenset({RelayState.PROVIDER_SELECTED, RelayState.ABORTED}),
    RelayState.PROVIDER_SELECTED: frozenset({RelayState.STREAMING, RelayState.ABORTED}),
    RelayState.STREAMING: frozenset({RelayState.COMPLETED, RelayState.ABORTED}),
    RelayState.COMPLETED: frozenset(),
    RelayState.ABORTED: frozenset(),
}


def stream_error_sse_chunk(message: str, code: str | None = None) -> bytes:
    payload = {"error": {"message": message, "type": "chatgate_stream_error", "code": code or "upstream_error"}}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def stream_done_sse_chunk() -> bytes:
    return DONE_MARKER + b"\n\n"


def stream_error_ndjson_line(message: str) -> bytes:
    return (json.dumps({"error": message, "done": True}, ensure_ascii=False) + "\n").encode("utf-8")


class StreamRelay:
    def __init__(
        self,
        request_id: str,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        self.request_id = request_id
        self._is_disconnected = is_disconnected
        self.state = RelayState.IDLE
        self.abort_reason: str | None = None
        self.bytes_relayed = 0
        self.chunks_relayed = 0
        self._stream: UpstreamStream | None = None

    def _transition(self, target: RelayState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal relay transition {self.state.value} -> {target.value}")
        logger.debug("relay transition request_id=%s %s -> %s", self.request_id, self.state.value, target.value)
        self.state = target

    def select(self, stream: UpstreamStream) -> None:
        self._transition(RelayState.PROVIDER_SELECTED)
        self._stream = stream

    def abort(self, reason: str) -> None:
        if self.state in {RelayState.COMPLETED, RelayState.ABORTED}:
            return
        self._transition(RelayState.ABORTED)
        self.abort_reason = reason

    async def release(self, reason: str = "downstream_disconnected") -> None:
        """Abort if still running and close the upstream. Safe to call twice."""
        self.abort(reason)
        if self._stream is not None:
            await self._stream.aclose()

    async def _client_gone(self) -> bool:
        if self._is_disconnected is None:
            return False
        try:
            return bool(await self._is_disconnected())
        except Exception as exc:  # pragma: no cover - depends on ASGI server
            logger.debug("disconnect probe failed request_id=%s error=%s", self.request_id, exc)
            return False

    async def relay(self) -> AsyncGenerator[bytes, None]:
        if self._stream is None:
            raise RuntimeError("relay() called before a provider stream was selected")
        stream = self._stream
        self._transition(RelayState.STREAMING)
        # Only the last few bytes are kept to check for the terminal marker.
        tail = b""
        iterator = stream.__aiter__()
        try:
            while True:
                # checked before each pull
                if await self._client_gone():
                    self.abort("downstream_disconnected")
                    logger.info(
                        "relay downstream disconnected request_id=%s provider=%s chunks=%d",
                        self.request_id,
                        stream.provider,
                        self.chunks_relayed,
                    )
                    return
                try:
                    chunk = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                self.chunks_relayed += 1
                self.bytes_relayed += len(chunk)
                tail = (tail + chunk)[-64:]
                yield chunk
        except UpstreamStreamError as exc:
            self.abort("upstream_error")
            logger.warning(
                "relay upstream error request_id=%s provider=%s chunks=%d error=%s",
                self.request_id,
                stream.provider,
                self.chunks_relayed,
                exc,
            )
            if stream.framing == "ndjson":
                yield stream_error_ndjson_line(str(exc))
            else:
                yield stream_error_sse_chunk(str(exc))
                yield stream_done_sse_chunk()
            return
        except (asyncio.CancelledError, GeneratorExit):
            self.abort("downstream_disconnected")
            raise
        finally:
            await stream.aclose()

        # NDJSON streams carry their own final `"done": true` line.
        if stream.framing == "sse" and DONE_MARKER not in tail:
            yield stream_done_sse_chunk()
        self._transition(RelayState.COMPLETED)
        logger.info(
            "relay completed request_id=%s provider=%s chunks=%d bytes=%d",
            self.request_id,
            stream.provider,
            self.chunks_relayed,
            self.bytes_relayed,
        )
