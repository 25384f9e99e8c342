import asyncio
import json
import random

import httpx
import pytest
from starlette.requests import Request

from chatgate.adapters.chat_api import router as chat_router
from chatgate.config.command_rules import load_command_rules
from chatgate.config.provider_chain import ProviderChain, ProviderDescriptor
from chatgate.config.settings import settings
from chatgate.core.chat_service import ChatService
from chatgate.core.command_handlers import CommandHandlers
from chatgate.core.commands import CommandInterceptor
from chatgate.core.dispatcher import Dispatcher
from chatgate.providers.base import AdapterResult
from chatgate.storage.sqlite_store import SqliteChatStore


def _build_request(path: str, *, method: str = "POST", body: bytes | dict | list | None = None) -> Request:
    payload = body if isinstance(body, bytes) else json.dumps(body if body is not None else {}).encode("utf-8")
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("latin-1"),
        "query_string": b"",
        "headers": [(b"content-type", b"application/json")],
        "client": ("127.0.0.1", 50000),
        "server": ("127.0.0.1", 5000),
    }
    sent = False

    async def receive() -> dict:
        nonlocal sent
        if sent:
            return {"type": "http.request", "body": b"", "more_body": False}
        sent = True
        return {"type": "http.request", "body": payload, "more_body": False}

    return Request(scope, receive)


class StubAdapter:
    def __init__(self, name: str, reply: str = "", error: str = "") -> None:
        self.name = name
        self.reply = reply
        self.error = error
        self.calls = 0

    async def send(self, conversation, model=None):
        self.calls += 1
        return AdapterResult(self.name, model or "m", content=self.reply, error=self.error)

    async def open_stream(self, conversation, model=None):
        raise AssertionError("not used")


def _install_service(monkeypatch, *adapters: StubAdapter) -> None:
    chain = ProviderChain(
        tuple(ProviderDescriptor(name=item.name, endpoint=f"https://{item.name}.example/v1", default_model="m") for item in adapters)
    )
    dispatcher = Dispatcher(chain, {item.name: item for item in adapters}, token_budget=3000, rng=random.Random(0))
    interceptor = CommandInterceptor.from_rules(load_command_rules(), locales=["en"], default_city="Dhaka")
    handlers = CommandHandlers(client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503))))
    monkeypatch.setattr(chat_router, "_chat_service", ChatService(dispatcher, interceptor, handlers))


@pytest.fixture(autouse=True)
def _quiet_settings(monkeypatch):
    monkeypatch.setattr(settings, "audit_log_path", "")
    monkeypatch.setattr(settings, "env", "dev")


def _json_body(response) -> dict:
    return json.loads(response.body.decode("utf-8"))


def test_chat_returns_reply_from_first_healthy_provider(monkeypatch):
    broken = StubAdapter("a", error="upstream_http_error:500:boom")
    healthy = StubAdapter("b", reply="hello!")
    _install_service(monkeypatch, broken, healthy)

    result = asyncio.run(chat_router.chat(_build_request("/api/chat", body={"messages": [{"role": "user", "content": "hi"}]})))

    assert result == {"content": "hello!", "provider": "b", "model": "m"}
    assert broken.calls == 1


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"messages": "hi"},
        {"messages": []},
        {"messages": [{"role": "robot", "content": "hi"}]},
        {"messages": [{"role": "user", "content": "hi", "timestamp": 10**20}]},
        {"messages": [{"role": "user", "content": "hi"}], "stream": "yes"},
        [1, 2, 3],
        b"{not json",
    ],
)
def test_malformed_requests_are_400(monkeypatch, body):
    adapter = StubAdapter("a", reply="x")
    _install_service(monkeypatch, adapter)
    response = asyncio.run(chat_router.chat(_build_request("/api/chat", body=body)))
    assert response.status_code == 400
    assert _json_body(response)["error"] == "invalid_request"
    assert adapter.calls == 0


def test_unknown_provider_is_400_without_upstream_calls(monkeypatch):
    adapter = StubAdapter("a", reply="x")
    _install_service(monkeypatch, adapter)
    body = {"messages": [{"role": "user", "content": "hi"}], "provider": "unknown-x"}
    response = asyncio.run(chat_router.chat(_build_request("/api/chat", body=body)))
    assert response.status_code == 400
    assert "unknown-x" in _json_body(response)["detail"]
    assert adapter.calls == 0


def test_exhausted_chain_is_500_with_detail_outside_production(monkeypatch):
    _install_service(monkeypatch, StubAdapter("a", error="upstream_http_error:503:down"))
    body = {"messages": [{"role": "user", "content": "hi"}]}
    response = asyncio.run(chat_router.chat(_build_request("/api/chat", body=body)))
    assert response.status_code == 500
    payload = _json_body(response)
    assert payload["error"] == "all_providers_exhausted"
    assert "upstream_http_error:503:down" in payload["detail"]


def test_exhausted_chain_hides_detail_in_production(monkeypatch):
    monkeypatch.setattr(settings, "env", "production")
    _install_service(monkeypatch, StubAdapter("a", error="upstream_http_error:503:secret-upstream-text"))
    body = {"messages": [{"role": "user", "content": "hi"}]}
    response = asyncio.run(chat_router.chat(_build_request("/api/chat", body=body)))
    assert response.status_code == 500
    assert _json_body(response) == {"error": "all_providers_exhausted"}


def test_command_failure_is_500_and_never_reaches_providers(monkeypatch):
    adapter = StubAdapter("a", reply="should not be used")
    _install_service(monkeypatch, adapter)
    body = {"messages": [{"role": "user", "content": "weather in Dhaka"}]}
    response = asyncio.run(chat_router.chat(_build_request("/api/chat", body=body)))
    assert response.status_code == 500
    assert _json_body(response)["error"] == "command_failed"
    assert adapter.calls == 0


def test_stream_request_returns_event_stream(monkeypatch):
    class FakeService:
        def new_context(self, conversation, options, request_id=None):
            return None

        async def stream_chat(self, conversation, options, ctx=None, is_disconnected=None):
            async def generator():
                yield b"data: one\n\n"
                yield b"data: [DONE]\n\n"

            return generator()

    monkeypatch.setattr(chat_router, "_chat_service", FakeService())
    body = {"messages": [{"role": "user", "content": "hi"}], "stream": True}
    response = asyncio.run(chat_router.chat(_build_request("/api/chat", body=body)))

    async def collect() -> bytes:
        return b"".join([chunk async for chunk in response.body_iterator])

    assert response.media_type == "text/event-stream"
    assert response.headers["cache-control"] == "no-cache"
    assert asyncio.run(collect()) == b"data: one\n\ndata: [DONE]\n\n"


def test_stream_response_closes_stream_that_was_never_read(monkeypatch):
    closed = []

    class UnreadStream:
        def __aiter__(self):
            raise AssertionError("client left before the first chunk")

        async def aclose(self):
            closed.append(True)

    class FakeService:
        def new_context(self, conversation, options, request_id=None):
            return None

        async def stream_chat(self, conversation, options, ctx=None, is_disconnected=None):
            return UnreadStream()

    monkeypatch.setattr(chat_router, "_chat_service", FakeService())
    body = {"messages": [{"role": "user", "content": "hi"}], "stream": True}
    response = asyncio.run(chat_router.chat(_build_request("/api/chat", body=body)))

    assert response.background is not None
    asyncio.run(response.background())
    assert closed == [True]


def test_chat_records_roundtrip_through_sqlite(monkeypatch, tmp_path):
    monkeypatch.setattr(chat_router, "_chat_store", SqliteChatStore(db_path=str(tmp_path / "chats.db")))

    first = {"id": "c1", "userId": "u1", "title": "first", "messages": [{"role": "user", "content": "hi"}]}
    second = {"id": 1700000000000, "userId": "u1", "title": "second", "messages": []}
    other_user = {"id": "c9", "userId": "u2", "title": "other", "messages": []}
    for body in (first, second, other_user):
        saved = asyncio.run(chat_router.save_chat(_build_request("/api/chats", body=body)))
        assert saved == {"id": str(body["id"])}

    listed = asyncio.run(chat_router.list_chats("u1"))
    assert [item["id"] for item in listed] == ["1700000000000", "c1"]
    assert listed[1]["messages"] == [{"role": "user", "content": "hi"}]
    assert listed[1]["userId"] == "u1"

    one = asyncio.run(chat_router.get_chat("u1", "c1"))
    assert one["title"] == "first"

    missing = asyncio.run(chat_router.get_chat("u2", "c1"))
    assert missing.status_code == 404
    assert _json_body(missing) == {"error": "Chat not found"}


def test_invalid_chat_record_is_400(monkeypatch, tmp_path):
    monkeypatch.setattr(chat_router, "_chat_store", SqliteChatStore(db_path=str(tmp_path / "chats.db")))
    response = asyncio.run(chat_router.save_chat(_build_request("/api/chats", body={"title": "no ids"})))
    assert response.status_code == 400
