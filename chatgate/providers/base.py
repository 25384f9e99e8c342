"""
Provider adapter contract.

Each adapter wraps one vendor endpoint and turns every failure (missing key,
transport error, timeout, non-2xx status, unparseable or empty reply) into a
result value with ``ok == False``. Exceptions escaping an adapter are
programming errors, not provider outages.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Sequence

import httpx

from chatgate.config.provider_chain import ProviderDescriptor
from chatgate.config.settings import settings
from chatgate.core.errors import UpstreamStreamError
from chatgate.core.models import Message
from chatgate.providers.upstream import (
    decode_json_or_text,
    get_upstream_async_client,
    safe_error_detail,
    transport_error_detail,
    upstream_http_timeout,
)
from chatgate.util.logger import logger


@dataclass(frozen=True, slots=True)
class AdapterResult:
    provider: str
    model: str
    content: str = ""
    error: str = ""
    status_code: int | None = None
    latency_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.error and bool(self.content.strip())

    def as_attempt(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "ok": self.ok,
            "error": self.error,
            "status_code": self.status_code,
            "latency_ms": self.latency_ms,
        }


class UpstreamStream:
    """An open streaming response. Iterating yields raw bytes; ``aclose`` releases the connection."""

    def __init__(self, provider: str, model: str, response: httpx.Response, framing: str = "sse") -> None:
        self.provider = provider
        self.model = model
        self.framing = framing
        self._response = response
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                if chunk:
                    yield chunk
        except httpx.HTTPError as exc:
            raise UpstreamStreamError(f"upstream_stream_error: {transport_error_detail(exc)}") from exc

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()
        logger.debug("upstream stream closed provider=%s model=%s", self.provider, self.model)


@dataclass(frozen=True, slots=True)
class StreamOpenResult:
    provider: str
    model: str
    stream: UpstreamStream | None = None
    error: str = ""
    status_code: int | None = None
    latency_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.stream is not None and not self.error

    def as_attempt(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "ok": self.ok,
            "error": self.error,
            "status_code": self.status_code,
            "latency_ms": self.latency_ms,
            "stream": True,
        }


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)


class ProviderAdapter(ABC):
    """Uniform send/stream contract over one provider endpoint."""

    stream_framing = "sse"

    def __init__(self, descriptor: ProviderDescriptor, client: httpx.AsyncClient | None = None) -> None:
        self.descriptor = descriptor
        self._client = client

    @property
    def name(self) -> str:
        return self.descriptor.name

    @abstractmethod
    def build_payload(self, conversation: Sequence[Message], model: str, stream: bool) -> dict[str, Any]:
        ...

    @abstractmethod
    def extract_content(self, body: dict[str, Any]) -> str:
        ...

    def build_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def timeout_seconds(self) -> float:
        return float(self.descriptor.timeout_seconds or settings.upstream_timeout_seconds)

    async def _http_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await get_upstream_async_client()

    def _missing_key(self) -> bool:
        return self.descriptor.requires_api_key and not self.descriptor.api_key

    async def send(self, conversation: Sequence[Message], model: str | None = None) -> AdapterResult:
        model_used = model or self.descriptor.default_model
        start = time.monotonic()
        if self._missing_key():
            return AdapterResult(self.name, model_used, error="missing_api_key")

        payload = self.build_payload(conversation, model_used, stream=False)
        client = await self._http_client()
        timeout = self.timeout_seconds()
        logger.debug("provider send start provider=%s model=%s messages=%d", self.name, model_used, len(conversation))
        try:
            response = await asyncio.wait_for(
                client.post(
                    self.descriptor.endpoint,
                    json=payload,
                    headers=self.build_headers(),
                    timeout=upstream_http_timeout(timeout),
                ),
                timeout=timeout,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            return AdapterResult(
                self.name, model_used, error=f"upstream_unreachable: {transport_error_detail(exc)}", latency_ms=_elapsed_ms(start)
            )

        body = decode_json_or_text(response.content)
        latency = _elapsed_ms(start)
        if response.status_code >= 400:
            return AdapterResult(
                self.name,
                model_used,
                error=f"upstream_http_error:{response.status_code}:{safe_error_detail(body)}",
                status_code=response.status_code,
                latency_ms=latency,
            )
        if not isinstance(body, dict):
            return AdapterResult(
                self.name, model_used, error="invalid_response_body", status_code=response.status_code, latency_ms=latency
            )
        content = self.extract_content(body)
        if not content.strip():
            return AdapterResult(
                self.name, model_used, error="empty_response", status_code=response.status_code, latency_ms=latency
            )
        return AdapterResult(self.name, model_used, content=content, status_code=response.status_code, latency_ms=latency)

    async def open_stream(self, conversation: Sequence[Message], model: str | None = None) -> StreamOpenResult:
        model_used = model or self.descriptor.default_model
        start = time.monotonic()
        if not self.descriptor.supports_streaming:
            return StreamOpenResult(self.name, model_used, error="streaming_not_supported")
        if self._missing_key():
            return StreamOpenResult(self.name, model_used, error="missing_api_key")

        payload = self.build_payload(conversation, model_used, stream=True)
        client = await self._http_client()
        timeout = self.timeout_seconds()
        request = client.build_request(
            "POST",
            self.descriptor.endpoint,
            json=payload,
            headers=self.build_headers(),
            timeout=upstream_http_timeout(timeout),
        )
        try:
            response = await asyncio.wait_for(client.send(request, stream=True), timeout=timeout)
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            return StreamOpenResult(
                self.name, model_used, error=f"upstream_unreachable: {transport_error_detail(exc)}", latency_ms=_elapsed_ms(start)
            )

        if response.status_code >= 400:
            try:
                raw = await response.aread()
            except httpx.HTTPError:
                raw = b""
            finally:
                await response.aclose()
            return StreamOpenResult(
                self.name,
                model_used,
                error=f"upstream_http_error:{response.status_code}:{safe_error_detail(decode_json_or_text(raw))}",
                status_code=response.status_code,
                latency_ms=_elapsed_ms(start),
            )

        logger.debug("provider stream connected provider=%s model=%s status=%s", self.name, model_used, response.status_code)
        return StreamOpenResult(
            self.name,
            model_used,
            stream=UpstreamStream(self.name, model_used, response, framing=self.stream_framing),
            status_code=response.status_code,
            latency_ms=_elapsed_ms(start),
        )


def flatten_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(flatten_text(item) for item in value)
    if isinstance(value, dict):
        if isinstance(value.get("text"), str):
            return value["text"]
        for key in ("content", "output_text", "text"):
            if key in value:
                text = flatten_text(value[key])
                if text:
                    return text
    return ""
