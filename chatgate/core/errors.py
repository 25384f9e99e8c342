"""Project error hierarchy."""

from __future__ import annotations

from typing import Any


class ChatGateError(Exception):
    """Base error."""


class InputError(ChatGateError):
    """Raised when a request is rejected before any network call."""


class TruncationDegenerateInput(InputError):
    """Raised when truncation is asked to work on an empty conversation."""


class AdapterError(ChatGateError):
    """One provider attempt failed.

    Adapters report failures as result values. AllProvidersExhaustedError
    exposes each recorded attempt in this form.
    """

    def __init__(self, provider: str, model: str, reason: str) -> None:
        super().__init__(f"{provider}/{model}: {reason}")
        self.provider = provider
        self.model = model
        self.reason = reason


class UpstreamStreamError(ChatGateError):
    """Raised while reading an already-open provider stream."""


class AllProvidersExhaustedError(ChatGateError):
    """Raised when every provider in the chain failed."""

    def __init__(self, attempts: list[dict[str, Any]] | None = None) -> None:
        self.attempts = list(attempts or [])
        tried = ", ".join(f"{item.get('provider')}/{item.get('model')}" for item in self.attempts) or "none"
        super().__init__(f"all providers failed (tried: {tried})")

    @property
    def failures(self) -> list[AdapterError]:
        return [
            AdapterError(str(item.get("provider")), str(item.get("model")), str(item.get("error") or "unknown"))
            for item in self.attempts
        ]


class CommandHandlerError(ChatGateError):
    """Raised when a command handler fails. Never retried against the provider chain."""

    def __init__(self, command_kind: str, reason: str) -> None:
        super().__init__(f"{command_kind} handler failed: {reason}")
        self.command_kind = command_kind
        self.reason = reason
