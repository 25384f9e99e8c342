"""Per-request runtime context."""

from __future__ import annotations

from dataclasses import dataclass, field
from time import time


@dataclass(slots=True)
class RequestContext:
    request_id: str
    route: str = "/api/chat"
    stream: bool = False
    requested_provider: str | None = None
    requested_model: str | None = None
    message_count: int = 0
    sent_message_count: int = 0
    command_kind: str | None = None
    provider: str | None = None
    model: str | None = None
    outcome: str = "pending"
    error_reason: str | None = None
    relay_state: str | None = None
    attempts: list[dict] = field(default_factory=list)
    started_at: float = field(default_factory=time)

    def add_attempt(self, item: dict) -> None:
        self.attempts.append(item)

    def elapsed_ms(self) -> float:
        return round((time() - self.started_at) * 1000, 2)
