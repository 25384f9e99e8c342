"""Ollama ``/api/chat`` adapter. Streams newline-delimited JSON."""

from __future__ import annotations

from typing import Any, Sequence

from chatgate.config.settings import settings
from chatgate.core.models import Message
from chatgate.providers.base import ProviderAdapter, flatten_text


class OllamaAdapter(ProviderAdapter):
    stream_framing = "ndjson"

    def build_payload(self, conversation: Sequence[Message], model: str, stream: bool) -> dict[str, Any]:
        descriptor = self.descriptor
        return {
            "model": model,
            "messages": [message.to_wire() for message in conversation],
            "stream": stream,
            "options": {
                "temperature": settings.default_temperature if descriptor.temperature is None else descriptor.temperature,
                "num_predict": descriptor.max_tokens or settings.default_max_tokens,
            },
        }

    def extract_content(self, body: dict[str, Any]) -> str:
        return flatten_text(body.get("message"))
