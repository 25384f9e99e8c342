import asyncio
import json

import httpx
import pytest

from chatgate.config.provider_chain import ProviderDescriptor
from chatgate.core.errors import UpstreamStreamError
from chatgate.core.models import Message
from chatgate.providers import create_adapter
from chatgate.providers.ollama import OllamaAdapter
from chatgate.providers.openai_compat import OpenAICompatAdapter


def _descriptor(**overrides) -> ProviderDescriptor:
    data = {
        "name": "groq",
        "kind": "openai",
        "endpoint": "https://api.groq.example/v1/chat/completions",
        "api_key_env": "GROQ_API_KEY",
        "api_key": "gsk_test_key_123",
        "default_model": "llama-3.1-8b-instant",
        "supports_streaming": True,
    }
    data.update(overrides)
    return ProviderDescriptor(**data)


_CONVERSATION = [Message(role="system", content="be brief"), Message(role="user", content="hello")]


def _run(coro_factory):
    return asyncio.run(coro_factory())


def test_create_adapter_picks_dialect():
    assert isinstance(create_adapter(_descriptor()), OpenAICompatAdapter)
    assert isinstance(create_adapter(_descriptor(kind="ollama", api_key_env="", api_key="")), OllamaAdapter)


def test_openai_send_success_builds_payload_and_auth():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": "hi!"}}]})

    async def run_case():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = OpenAICompatAdapter(_descriptor(), client=client)
            return await adapter.send(_CONVERSATION, "llama-3.3-70b-versatile")

    result = _run(run_case)
    assert result.ok
    assert result.content == "hi!"
    assert result.model == "llama-3.3-70b-versatile"
    body = json.loads(seen[0].content)
    assert body["model"] == "llama-3.3-70b-versatile"
    assert body["messages"] == [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hello"}]
    assert body["stream"] is False
    assert body["max_tokens"] == 500
    assert seen[0].headers["authorization"] == "Bearer gsk_test_key_123"


def test_missing_api_key_fails_without_network_call():
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    async def run_case():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = OpenAICompatAdapter(_descriptor(api_key=""), client=client)
            return await adapter.send(_CONVERSATION)

    result = _run(run_case)
    assert not result.ok
    assert result.error == "missing_api_key"
    assert calls == []


@pytest.mark.parametrize(
    "response, expected",
    [
        (httpx.Response(500, json={"error": {"message": "overloaded"}}), "upstream_http_error:500:overloaded"),
        (httpx.Response(200, json={"choices": [{"message": {"content": "   "}}]}), "empty_response"),
        (httpx.Response(200, text="<html>gateway</html>"), "invalid_response_body"),
    ],
)
def test_send_failures_are_result_values(response, expected):
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    async def run_case():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await OpenAICompatAdapter(_descriptor(), client=client).send(_CONVERSATION)

    result = _run(run_case)
    assert not result.ok
    assert result.error == expected


def test_send_timeout_is_a_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("connect timed out", request=request)

    async def run_case():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await OpenAICompatAdapter(_descriptor(), client=client).send(_CONVERSATION)

    result = _run(run_case)
    assert not result.ok
    assert result.error == "upstream_unreachable: timeout"


def test_ollama_payload_and_reply():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"message": {"role": "assistant", "content": "namaskar"}, "done": True})

    descriptor = _descriptor(
        name="ollama", kind="ollama", endpoint="http://127.0.0.1:11434/api/chat", api_key_env="", api_key="", default_model="llama3.1:8b"
    )

    async def run_case():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await OllamaAdapter(descriptor, client=client).send(_CONVERSATION)

    result = _run(run_case)
    assert result.ok
    assert result.content == "namaskar"
    body = json.loads(seen[0].content)
    assert body["options"]["num_predict"] == 500
    assert "authorization" not in seen[0].headers


def test_open_stream_yields_raw_bytes():
    sse = b'data: {"choices":[{"delta":{"content":"he"}}]}\n\ndata: {"choices":[{"delta":{"content":"llo"}}]}\n\ndata: [DONE]\n\n'

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, content=sse, headers={"content-type": "text/event-stream"})

    async def run_case():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            opened = await OpenAICompatAdapter(_descriptor(), client=client).open_stream(_CONVERSATION)
            assert opened.ok
            out = [chunk async for chunk in opened.stream]
            await opened.stream.aclose()
            return b"".join(out), opened.stream.closed

    body, closed = _run(run_case)
    assert body == sse
    assert closed


def test_open_stream_http_error_is_a_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": "rate limited"})

    async def run_case():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await OpenAICompatAdapter(_descriptor(), client=client).open_stream(_CONVERSATION)

    opened = _run(run_case)
    assert not opened.ok
    assert opened.stream is None
    assert opened.error == "upstream_http_error:429:rate limited"


def test_open_stream_refused_when_provider_cannot_stream():
    async def run_case():
        return await OpenAICompatAdapter(_descriptor(supports_streaming=False)).open_stream(_CONVERSATION)

    opened = _run(run_case)
    assert opened.error == "streaming_not_supported"


def test_stream_read_error_becomes_upstream_stream_error():
    class BrokenStream(httpx.AsyncByteStream):
        async def __aiter__(self):
            yield b"data: partial\n\n"
            raise httpx.ReadError("connection reset")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=BrokenStream(), headers={"content-type": "text/event-stream"})

    async def run_case():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            opened = await OpenAICompatAdapter(_descriptor(), client=client).open_stream(_CONVERSATION)
            received = []
            with pytest.raises(UpstreamStreamError):
                async for chunk in opened.stream:
                    received.append(chunk)
            await opened.stream.aclose()
            return received

    assert _run(run_case) == [b"data: partial\n\n"]
