"""Redis-backed chat record store."""

from __future__ import annotations

from typing import Any

from chatgate.core.models import ChatRecord
from chatgate.storage.chat_store import ChatStore
from chatgate.util.logger import get_logger

logger = get_logger("store")

try:
    import redis
except Exception:  # pragma: no cover - optional dependency
    redis = None


def _to_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class RedisChatStore(ChatStore):
    def __init__(self, *, redis_url: str, key_prefix: str = "chatgate") -> None:
        if redis is None:  # pragma: no cover - depends on optional package
            raise RuntimeError("redis package is not installed, cannot use RedisChatStore")
        self.client = redis.Redis.from_url(redis_url, decode_responses=False)
        self.key_prefix = key_prefix.strip() or "chatgate"

    def _chat_key(self, user_id: str, chat_id: str) -> str:
        return f"{self.key_prefix}:chat:{user_id}:{chat_id}"

    def _user_index_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:chats:{user_id}"

    def upsert(self, record: ChatRecord) -> None:
        key = self._chat_key(record.user_id, record.id)
        existing = self.client.get(key)
        if existing:
            # created_at is kept from the first write
            previous = ChatRecord.model_validate_json(_to_str(existing))
            record = record.model_copy(update={"created_at": previous.created_at})
        pipe = self.client.pipeline()
        pipe.set(key, record.model_dump_json())
        pipe.zadd(self._user_index_key(record.user_id), {record.id: record.updated_at.timestamp()})
        pipe.execute()

    def list_by_user(self, user_id: str) -> list[ChatRecord]:
        chat_ids = [_to_str(raw) for raw in self.client.zrevrange(self._user_index_key(user_id), 0, -1)]
        if not chat_ids:
            return []
        raw_items = self.client.mget([self._chat_key(user_id, chat_id) for chat_id in chat_ids])
        records: list[ChatRecord] = []
        for raw in raw_items:
            if not raw:
                continue
            try:
                records.append(ChatRecord.model_validate_json(_to_str(raw)))
            except ValueError as exc:
                logger.warning("redis chat record unreadable user_id=%s error=%s", user_id, exc)
        return records

    def get_one(self, user_id: str, chat_id: str) -> ChatRecord | None:
        raw = self.client.get(self._chat_key(user_id, chat_id))
        if not raw:
            return None
        try:
            return ChatRecord.model_validate_json(_to_str(raw))
        except ValueError as exc:
            logger.warning("redis chat record unreadable user_id=%s chat_id=%s error=%s", user_id, chat_id, exc)
            return None
