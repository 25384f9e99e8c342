"""Provider adapter construction helpers."""

from __future__ import annotations

import httpx

from chatgate.config.provider_chain import ProviderChain, ProviderDescriptor
from chatgate.providers.base import ProviderAdapter
from chatgate.providers.ollama import OllamaAdapter
from chatgate.providers.openai_compat import OpenAICompatAdapter


def create_adapter(descriptor: ProviderDescriptor, client: httpx.AsyncClient | None = None) -> ProviderAdapter:
    kind = descriptor.kind.strip().lower()
    if kind == "ollama":
        return OllamaAdapter(descriptor, client=client)
    if kind == "openai":
        return OpenAICompatAdapter(descriptor, client=client)
    raise ValueError(f"Unsupported provider kind: {descriptor.kind}")


def create_adapters(chain: ProviderChain, client: httpx.AsyncClient | None = None) -> dict[str, ProviderAdapter]:
    return {descriptor.name: create_adapter(descriptor, client=client) for descriptor in chain}
