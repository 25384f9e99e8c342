"""OpenAI-compatible ``chat/completions`` adapter (Groq, OpenRouter, OpenAI, ...)."""

from __future__ import annotations

from typing import Any, Sequence

from chatgate.config.settings import settings
from chatgate.core.models import Message
from chatgate.providers.base import ProviderAdapter, flatten_text


class OpenAICompatAdapter(ProviderAdapter):
    def build_headers(self) -> dict[str, str]:
        headers = super().build_headers()
        if self.descriptor.api_key:
            headers["Authorization"] = f"Bearer {self.descriptor.api_key}"
        return headers

    def build_payload(self, conversation: Sequence[Message], model: str, stream: bool) -> dict[str, Any]:
        descriptor = self.descriptor
        return {
            "model": model,
            "messages": [message.to_wire() for message in conversation],
            "max_tokens": descriptor.max_tokens or settings.default_max_tokens,
            "temperature": settings.default_temperature if descriptor.temperature is None else descriptor.temperature,
            "stream": stream,
        }

    def extract_content(self, body: dict[str, Any]) -> str:
        choices = body.get("choices")
        if isinstance(choices, list) and choices:
            first = choices[0]
            if isinstance(first, dict):
                text = flatten_text(first.get("message"))
                if text:
                    return text
                text = flatten_text(first.get("text"))
                if text:
                    return text
        return flatten_text(body.get("output_text"))
