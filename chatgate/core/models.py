"""Request, reply and record models."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "assistant", "system"]


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: datetime | None = None

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class ChatOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    stream: bool = False
    provider: str | None = None
    model: str | None = None


class ChatReply(BaseModel):
    content: str
    provider: str | None = None
    model: str | None = None
    command: str | None = None


class ErrorReply(BaseModel):
    error: str
    detail: str | None = None


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ChatRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    user_id: str = Field(alias="userId")
    title: str = ""
    messages: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=_utcnow, alias="updatedAt")
