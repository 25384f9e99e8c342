"""Chat record store abstraction."""

from __future__ import annotations

from abc import ABC, abstractmethod

from chatgate.core.models import ChatRecord


class ChatStore(ABC):
    @abstractmethod
    def upsert(self, record: ChatRecord) -> None:
        pass

    @abstractmethod
    def list_by_user(self, user_id: str) -> list[ChatRecord]:
        """Most recently updated first."""
        pass

    @abstractmethod
    def get_one(self, user_id: str, chat_id: str) -> ChatRecord | None:
        pass
