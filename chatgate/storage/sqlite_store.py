"""SQLite-backed chat record store."""

from __future__ import annotations

import json
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, TypeVar

from chatgate.core.models import ChatRecord
from chatgate.storage.chat_store import ChatStore
from chatgate.util.logger import get_logger


logger = get_logger("store")

T = TypeVar("T")


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _row_to_record(row: sqlite3.Row) -> ChatRecord:
    try:
        messages = json.loads(row["messages"])
    except json.JSONDecodeError:
        logger.warning("chat record has unreadable messages id=%s", row["id"])
        messages = []
    return ChatRecord(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"] or "",
        messages=messages if isinstance(messages, list) else [],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


class SqliteChatStore(ChatStore):
    def __init__(self, db_path: str = "logs/chatgate.db") -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.execute("PRAGMA busy_timeout=5000")
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chats (
                  id TEXT NOT NULL,
                  user_id TEXT NOT NULL,
                  title TEXT NOT NULL DEFAULT '',
                  messages TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (user_id, id)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_chats_user_updated
                ON chats (user_id, updated_at DESC)
                """
            )
            conn.commit()
        logger.info("sqlite chat store initialized path=%s", self.db_path)

    def _with_retry(self, fn: Callable[[], T], retries: int = 5) -> T:
        for attempt in range(retries):
            try:
                return fn()
            except sqlite3.OperationalError as exc:
                if "locked" not in str(exc).lower() or attempt == retries - 1:
                    raise
                time.sleep(0.01 * (attempt + 1))
        raise RuntimeError("unreachable retry state")

    def upsert(self, record: ChatRecord) -> None:
        messages = json.dumps(record.messages, ensure_ascii=False)

        def _write() -> None:
            with self._connect() as conn:
                # created_at is kept from the first insert
                conn.execute(
                    """
                    INSERT INTO chats (id, user_id, title, messages, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, id)
                    DO UPDATE SET title=excluded.title, messages=excluded.messages, updated_at=excluded.updated_at
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.title,
                        messages,
                        _to_iso(record.created_at),
                        _to_iso(record.updated_at),
                    ),
                )
                conn.commit()

        self._with_retry(_write)

    def list_by_user(self, user_id: str) -> list[ChatRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chats WHERE user_id = ? ORDER BY updated_at DESC, created_at DESC",
                (user_id,),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def get_one(self, user_id: str, chat_id: str) -> ChatRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chats WHERE user_id = ? AND id = ?",
                (user_id, chat_id),
            ).fetchone()
        if row is None:
            return None
        return _row_to_record(row)
