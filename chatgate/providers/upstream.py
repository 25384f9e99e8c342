"""
Shared outbound HTTP client and response decoding for provider calls.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx

from chatgate.config.settings import settings


_upstream_async_client: httpx.AsyncClient | None = None
_upstream_client_lock: asyncio.Lock | None = None


def _upstream_http_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=max(10, int(settings.upstream_max_connections)),
        max_keepalive_connections=max(5, int(settings.upstream_max_keepalive_connections)),
    )


def upstream_http_timeout(seconds: float | None = None) -> httpx.Timeout:
    timeout = float(seconds or settings.upstream_timeout_seconds)
    return httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout)


async def get_upstream_async_client() -> httpx.AsyncClient:
    global _upstream_async_client, _upstream_client_lock
    if _upstream_async_client is not None:
        return _upstream_async_client
    if _upstream_client_lock is None:
        _upstream_client_lock = asyncio.Lock()
    async with _upstream_client_lock:
        if _upstream_async_client is None:
            _upstream_async_client = httpx.AsyncClient(
                http2=False,
                timeout=upstream_http_timeout(),
                limits=_upstream_http_limits(),
            )
    return _upstream_async_client


async def close_upstream_async_client() -> None:
    global _upstream_async_client
    if _upstream_async_client is not None:
        await _upstream_async_client.aclose()
        _upstream_async_client = None


def decode_json_or_text(body: bytes) -> dict[str, Any] | str:
    text = body.decode("utf-8", errors="replace")
    if not text:
        return ""
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
        return text
    except json.JSONDecodeError:
        return text


def safe_error_detail(payload: dict[str, Any] | str) -> str:
    if isinstance(payload, str):
        return payload[:600]
    error = payload.get("error")
    if isinstance(error, str):
        return error[:600]
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"][:600]
    return json.dumps(payload, ensure_ascii=False)[:600]


def transport_error_detail(exc: Exception) -> str:
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return "timeout"
    return (str(exc) or "").strip() or exc.__class__.__name__ or "connection_failed"
