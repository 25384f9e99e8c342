"""
Request orchestration: interception, truncation, dispatch and relay.

Steps run strictly in sequence for one request. The service holds only
read-only collaborators, so one instance serves all concurrent requests.
"""

from __future__ import annotations

import json
import time
import uuid
from typing import AsyncGenerator, AsyncIterator, Awaitable, Callable, Sequence

import httpx

from chatgate.config.provider_chain import ProviderChain, load_provider_chain
from chatgate.config.settings import settings
from chatgate.core.audit import audit_request
from chatgate.core.command_handlers import CommandHandlers
from chatgate.core.commands import Command, CommandInterceptor, latest_user_text
from chatgate.core.context import RequestContext
from chatgate.core.dispatcher import Dispatcher
from chatgate.core.errors import (
    AllProvidersExhaustedError,
    ChatGateError,
    CommandHandlerError,
    InputError,
    TruncationDegenerateInput,
)
from chatgate.core.models import ChatOptions, ChatReply, Message
from chatgate.core.stream_relay import RelayState, StreamRelay, stream_done_sse_chunk
from chatgate.providers import create_adapters
from chatgate.util.debug_excerpt import debug_log_original
from chatgate.util.logger import logger


def new_request_id() -> str:
    return f"chat-{uuid.uuid4().hex[:16]}"


def command_sse_chunk(ctx: RequestContext, content: str) -> bytes:
    payload = {
        "id": ctx.request_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": f"command:{ctx.command_kind}",
        "choices": [{"index": 0, "delta": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
    }
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def _error_reason(exc: Exception) -> str:
    if isinstance(exc, CommandHandlerError):
        return f"command_failed:{exc.command_kind}"
    if isinstance(exc, AllProvidersExhaustedError):
        return "all_providers_exhausted"
    if isinstance(exc, InputError):
        return "invalid_request"
    return exc.__class__.__name__


class ChatStream:
    """Byte stream for one streamed reply.

    ``aclose()`` releases the upstream and writes the audit record exactly
    once, whether the chunks were read to the end, partly, or not at all.
    """

    def __init__(self, chunks: AsyncGenerator[bytes, None], finish: Callable[[], Awaitable[None]]) -> None:
        self._chunks = chunks
        self._finish = finish
        self._closed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncGenerator[bytes, None]:
        try:
            async for chunk in self._chunks:
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._chunks.aclose()
        finally:
            await self._finish()


class ChatService:
    def __init__(
        self,
        dispatcher: Dispatcher,
        interceptor: CommandInterceptor,
        handlers: CommandHandlers,
    ) -> None:
        self.dispatcher = dispatcher
        self.interceptor = interceptor
        self.handlers = handlers

    def new_context(
        self,
        conversation: Sequence[Message],
        options: ChatOptions,
        request_id: str | None = None,
    ) -> RequestContext:
        return RequestContext(
            request_id=request_id or new_request_id(),
            stream=options.stream,
            requested_provider=options.provider,
            requested_model=options.model,
            message_count=len(conversation),
        )

    def _intercept(self, conversation: Sequence[Message], ctx: RequestContext) -> Command | None:
        if not conversation:
            raise TruncationDegenerateInput("conversation is empty")
        command = self.interceptor.detect_conversation(conversation)
        if command is not None:
            ctx.command_kind = command.kind
            debug_log_original("command_detected", latest_user_text(conversation), request_id=ctx.request_id, reason=command.kind)
            logger.info("command detected request_id=%s kind=%s", ctx.request_id, command.kind)
        return command

    async def _run_command(self, command: Command, ctx: RequestContext) -> str:
        try:
            content = await self.handlers.handle(command)
        except CommandHandlerError as exc:
            logger.error("command handler failed request_id=%s kind=%s reason=%s", ctx.request_id, exc.command_kind, exc.reason)
            raise
        ctx.provider = f"command:{command.kind}"
        return content

    async def send_chat(
        self,
        conversation: Sequence[Message],
        options: ChatOptions | None = None,
        ctx: RequestContext | None = None,
    ) -> ChatReply:
        options = options or ChatOptions()
        ctx = ctx or self.new_context(conversation, options)
        try:
            command = self._intercept(conversation, ctx)
            if command is not None:
                content = await self._run_command(command, ctx)
                ctx.outcome = "ok"
                return ChatReply(content=content, command=command.kind)

            debug_log_original("dispatch_input", latest_user_text(conversation), request_id=ctx.request_id)
            result = await self.dispatcher.dispatch(conversation, options, ctx)
            ctx.provider = result.provider
            ctx.model = result.model
            ctx.outcome = "ok"
            return ChatReply(content=result.content, provider=result.provider, model=result.model)
        except ChatGateError as exc:
            ctx.outcome = "error"
            ctx.error_reason = _error_reason(exc)
            if isinstance(exc, AllProvidersExhaustedError):
                logger.error("chat failed request_id=%s error=%s", ctx.request_id, exc)
            raise
        finally:
            audit_request(ctx)

    async def stream_chat(
        self,
        conversation: Sequence[Message],
        options: ChatOptions | None = None,
        ctx: RequestContext | None = None,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> ChatStream:
        """Select a provider and return the byte stream for the response.

        Input errors, command failures and exhausted providers raise here,
        before any byte is sent, so the caller can still answer with a JSON
        error and a proper status code.
        """
        options = options or ChatOptions(stream=True)
        ctx = ctx or self.new_context(conversation, options)
        ctx.stream = True
        try:
            command = self._intercept(conversation, ctx)
            if command is not None:
                content = await self._run_command(command, ctx)
            else:
                debug_log_original("dispatch_input", latest_user_text(conversation), request_id=ctx.request_id)
                selection = await self.dispatcher.open_stream(conversation, options, ctx)
        except ChatGateError as exc:
            ctx.outcome = "error"
            ctx.error_reason = _error_reason(exc)
            if isinstance(exc, AllProvidersExhaustedError):
                logger.error("chat stream failed request_id=%s error=%s", ctx.request_id, exc)
            audit_request(ctx)
            raise

        if command is not None:
            return self._command_stream(ctx, content)

        ctx.provider = selection.provider
        ctx.model = selection.model
        relay = StreamRelay(ctx.request_id, is_disconnected=is_disconnected)
        relay.select(selection.stream)
        return self._relay_stream(ctx, relay)

    def _command_stream(self, ctx: RequestContext, content: str) -> ChatStream:
        async def finish() -> None:
            if ctx.outcome == "pending":
                ctx.outcome = "aborted"
            audit_request(ctx)

        async def chunks() -> AsyncGenerator[bytes, None]:
            yield command_sse_chunk(ctx, content)
            yield stream_done_sse_chunk()
            ctx.outcome = "ok"

        return ChatStream(chunks(), finish)

    def _relay_stream(self, ctx: RequestContext, relay: StreamRelay) -> ChatStream:
        async def finish() -> None:
            await relay.release()
            ctx.relay_state = relay.state.value
            if relay.abort_reason:
                ctx.outcome = "aborted"
                ctx.error_reason = relay.abort_reason
            elif relay.state is RelayState.COMPLETED:
                ctx.outcome = "ok"
            else:
                ctx.outcome = "aborted"
            audit_request(ctx)

        async def chunks() -> AsyncGenerator[bytes, None]:
            stream = relay.relay()
            try:
                async for chunk in stream:
                    yield chunk
            finally:
                await stream.aclose()

        return ChatStream(chunks(), finish)


def build_chat_service(
    chain: ProviderChain | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> ChatService:
    """Wire the service from settings and the YAML config files."""
    chain = chain or load_provider_chain()
    dispatcher = Dispatcher(chain, create_adapters(chain, client=client), token_budget=settings.token_budget)
    service = ChatService(
        dispatcher=dispatcher,
        interceptor=CommandInterceptor.from_rules(),
        handlers=CommandHandlers(client=client),
    )
    logger.info(
        "chat service ready providers=%s token_budget=%d locales=%s",
        ",".join(chain.names()),
        settings.token_budget,
        ",".join(settings.locales()),
    )
    return service
