"""Chat API payload <-> internal model mapping."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import ValidationError

from chatgate.config.settings import settings
from chatgate.core.errors import InputError
from chatgate.core.models import ChatOptions, ChatRecord, Message


_IMAGE_PLACEHOLDER = "[IMAGE_CONTENT]"
_NON_TEXT_PLACEHOLDER = "[NON_TEXT_PART]"
_TRUNCATED_SUFFIX = " [TRUNCATED]"
_ROLE_ALIASES = {"bot": "assistant", "ai": "assistant", "human": "user"}


def _cap_text(text: str, limit: int) -> str:
    if limit <= 0:
        return text
    if len(text) <= limit:
        return text
    return f"{text[:limit]}{_TRUNCATED_SUFFIX}"


def _flatten_part(part: object) -> str:
    if isinstance(part, dict):
        ptype = str(part.get("type", "")).lower()
        if "image" in ptype or "image_url" in part:
            return _IMAGE_PLACEHOLDER
        text = part.get("text")
        if isinstance(text, str):
            return text
        content = part.get("content")
        if isinstance(content, str):
            return content
        return _NON_TEXT_PLACEHOLDER
    if isinstance(part, str):
        return part
    return str(part)


def _flatten_content(content: object) -> str:
    if content is None:
        return ""
    if isinstance(content, list):
        merged = " ".join(_flatten_part(part) for part in content)
        return " ".join(merged.split())
    if isinstance(content, dict):
        return _flatten_part(content)
    return str(content)


def _parse_timestamp(value: Any, index: int) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        # browsers send Date.now() in milliseconds
        seconds = value / 1000 if value > 10**11 else value
        try:
            return datetime.fromtimestamp(seconds).astimezone()
        except (OverflowError, OSError, ValueError) as exc:
            raise InputError(f"messages[{index}].timestamp is out of range: {value!r}") from exc
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _to_message(index: int, item: Any) -> Message:
    if not isinstance(item, dict):
        raise InputError(f"messages[{index}] must be an object")
    role = str(item.get("role") or "").strip().lower()
    role = _ROLE_ALIASES.get(role, role)
    if role not in {"user", "assistant", "system"}:
        raise InputError(f"messages[{index}].role is invalid: {item.get('role')!r}")
    content = _cap_text(_flatten_content(item.get("content")), int(settings.max_content_length_per_message))
    return Message(role=role, content=content, timestamp=_parse_timestamp(item.get("timestamp"), index))


def to_conversation(payload: dict[str, Any]) -> list[Message]:
    messages = payload.get("messages")
    if messages is None:
        raise InputError("messages is required")
    if not isinstance(messages, list):
        raise InputError("messages must be a list")
    if not messages:
        raise InputError("messages must not be empty")
    max_messages = int(settings.max_messages_count)
    if max_messages > 0 and len(messages) > max_messages:
        raise InputError(f"messages count={len(messages)} exceeds max={max_messages}")
    return [_to_message(index, item) for index, item in enumerate(messages)]


def _optional_name(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InputError(f"{key} must be a string")
    return value.strip() or None


def to_options(payload: dict[str, Any]) -> ChatOptions:
    stream = payload.get("stream", False)
    if not isinstance(stream, bool):
        raise InputError("stream must be a boolean")
    return ChatOptions(
        stream=stream,
        provider=_optional_name(payload, "provider"),
        model=_optional_name(payload, "model"),
    )


def to_chat_record(payload: dict[str, Any]) -> ChatRecord:
    data = dict(payload)
    # clients often use Date.now() as the chat id
    if isinstance(data.get("id"), int):
        data["id"] = str(data["id"])
    try:
        record = ChatRecord.model_validate(data)
    except ValidationError as exc:
        raise InputError(f"invalid chat record: {exc.errors()[0].get('msg', 'validation error')}") from exc
    if not record.id.strip() or not record.user_id.strip():
        raise InputError("id and userId are required")
    return record


def from_chat_record(record: ChatRecord) -> dict[str, Any]:
    return record.model_dump(mode="json", by_alias=True)
