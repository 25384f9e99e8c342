"""Ordered provider fallback.

Every request walks the chain from the top. There is no health tracking and
no state shared between requests besides the immutable chain itself.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from chatgate.config.provider_chain import ProviderChain, ProviderDescriptor
from chatgate.core.context import RequestContext
from chatgate.core.errors import AllProvidersExhaustedError, InputError
from chatgate.core.models import ChatOptions, Message
from chatgate.core.truncation import truncate
from chatgate.providers import create_adapters
from chatgate.providers.base import ProviderAdapter, UpstreamStream
from chatgate.util.logger import logger


@dataclass(slots=True)
class DispatchResult:
    content: str
    provider: str
    model: str
    attempts: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class StreamSelection:
    stream: UpstreamStream
    provider: str
    model: str
    attempts: list[dict[str, Any]] = field(default_factory=list)


def select_model_variant(
    descriptor: ProviderDescriptor,
    override: str | None = None,
    rng: random.Random | None = None,
    *,
    explicit_provider: bool = False,
) -> str:
    """Pick the model to send to ``descriptor``.

    An override always wins for an explicitly named provider. In chain mode it
    only applies to providers that list it, since one vendor's model id means
    nothing to another. Otherwise one variant is drawn uniformly at random.
    """
    variants = descriptor.variants
    if override:
        if explicit_provider or override in variants:
            return override
    if len(variants) > 1:
        return (rng or random).choice(variants)
    return descriptor.default_model


class Dispatcher:
    def __init__(
        self,
        chain: ProviderChain,
        adapters: Mapping[str, ProviderAdapter] | None = None,
        *,
        token_budget: int,
        rng: random.Random | None = None,
    ) -> None:
        self.chain = chain
        self._adapters = dict(adapters) if adapters is not None else create_adapters(chain)
        missing = [name for name in chain.names() if name not in self._adapters]
        if missing:
            raise ValueError(f"no adapter configured for providers: {missing}")
        self.token_budget = token_budget
        self._rng = rng or random.Random()

    def _candidates(self, options: ChatOptions, *, stream: bool) -> list[ProviderDescriptor]:
        if options.provider:
            descriptor = self.chain.get(options.provider)
            if descriptor is None:
                raise InputError(f"unknown provider: {options.provider}")
            if stream and not descriptor.supports_streaming:
                raise InputError(f"provider does not support streaming: {descriptor.name}")
            return [descriptor]
        if not stream:
            return list(self.chain)
        return [item for item in self.chain if item.supports_streaming]

    def prepare(self, conversation: Sequence[Message], ctx: RequestContext | None = None) -> list[Message]:
        truncated = truncate(conversation, self.token_budget)
        if ctx is not None:
            ctx.sent_message_count = len(truncated)
        if len(truncated) < len(conversation):
            logger.info(
                "conversation truncated request_id=%s kept=%d dropped=%d budget=%d",
                ctx.request_id if ctx else "-",
                len(truncated),
                len(conversation) - len(truncated),
                self.token_budget,
            )
        return truncated

    async def dispatch(
        self,
        conversation: Sequence[Message],
        options: ChatOptions | None = None,
        ctx: RequestContext | None = None,
    ) -> DispatchResult:
        options = options or ChatOptions()
        candidates = self._candidates(options, stream=False)
        messages = self.prepare(conversation, ctx)
        explicit = bool(options.provider)
        attempts: list[dict[str, Any]] = []

        for descriptor in candidates:
            model = select_model_variant(descriptor, options.model, self._rng, explicit_provider=explicit)
            result = await self._adapters[descriptor.name].send(messages, model)
            attempt = result.as_attempt()
            attempts.append(attempt)
            if ctx is not None:
                ctx.add_attempt(attempt)
            if result.ok:
                logger.info(
                    "provider succeeded request_id=%s provider=%s model=%s attempt=%d latency_ms=%s",
                    ctx.request_id if ctx else "-",
                    result.provider,
                    result.model,
                    len(attempts),
                    result.latency_ms,
                )
                return DispatchResult(content=result.content, provider=result.provider, model=result.model, attempts=attempts)
            logger.warning(
                "provider failed request_id=%s provider=%s model=%s error=%s",
                ctx.request_id if ctx else "-",
                result.provider,
                result.model,
                result.error[:200],
            )

        raise AllProvidersExhaustedError(attempts)

    async def open_stream(
        self,
        conversation: Sequence[Message],
        options: ChatOptions | None = None,
        ctx: RequestContext | None = None,
    ) -> StreamSelection:
        """Open a stream on the first provider that accepts one.

        Fallback only covers opening the stream. Once bytes flow, errors
        belong to the relay.
        """
        options = options or ChatOptions(stream=True)
        candidates = self._candidates(options, stream=True)
        messages = self.prepare(conversation, ctx)
        explicit = bool(options.provider)
        attempts: list[dict[str, Any]] = []

        for descriptor in candidates:
            model = select_model_variant(descriptor, options.model, self._rng, explicit_provider=explicit)
            result = await self._adapters[descriptor.name].open_stream(messages, model)
            attempt = result.as_attempt()
            attempts.append(attempt)
            if ctx is not None:
                ctx.add_attempt(attempt)
            if result.ok and result.stream is not None:
                logger.info(
                    "provider stream opened request_id=%s provider=%s model=%s attempt=%d",
                    ctx.request_id if ctx else "-",
                    result.provider,
                    result.model,
                    len(attempts),
                )
                return StreamSelection(stream=result.stream, provider=result.provider, model=result.model, attempts=attempts)
            logger.warning(
                "provider stream open failed request_id=%s provider=%s model=%s error=%s",
                ctx.request_id if ctx else "-",
                result.provider,
                result.model,
                result.error[:200],
            )

        raise AllProvidersExhaustedError(attempts)
