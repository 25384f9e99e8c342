"""Chat store backend selection helpers."""

from __future__ import annotations

from chatgate.config.settings import settings
from chatgate.storage.chat_store import ChatStore
from chatgate.storage.redis_store import RedisChatStore
from chatgate.storage.sqlite_store import SqliteChatStore


def create_chat_store() -> ChatStore:
    backend = settings.chat_store_backend.strip().lower()
    if backend == "redis":
        return RedisChatStore(redis_url=settings.redis_url, key_prefix=settings.redis_key_prefix)
    return SqliteChatStore(db_path=settings.sqlite_db_path)
