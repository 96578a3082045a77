from __future__ import annotations

import json
import os
import sqlite3
import time
from typing import Any, Callable, Dict, List, Optional

from .models import ChatSession, Message

DEFAULT_TITLE = "新对话"


def _now_ms() -> int:
    return int(time.time() * 1000)


class KeyValueStore:
    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    # Values go through JSON so callers never share mutable state with the store
    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, ensure_ascii=False)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class SQLiteKeyValueStore(KeyValueStore):
    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path)

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def get(self, key: str) -> Optional[Any]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        return None if row is None else json.loads(row[0])

    def set(self, key: str, value: Any) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?,?)",
                (key, json.dumps(value, ensure_ascii=False)),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM kv WHERE key=?", (key,))
            conn.commit()


def create_store(store_path: str) -> KeyValueStore:
    if not store_path or store_path == ":memory:":
        return InMemoryKeyValueStore()
    return SQLiteKeyValueStore(store_path)


class SessionRepository:
    """Per-user session index and message lists on top of a key-value store.

    The index (``sessions:<user>``) and each message list
    (``messages:<user>:<session>``) are separate keys written without a
    transaction; every write is last-writer-wins.
    """

    def __init__(
        self,
        store: KeyValueStore,
        max_sessions: int = 50,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._max_sessions = max_sessions
        self._clock = clock

    @staticmethod
    def _sessions_key(user_id: str) -> str:
        return f"sessions:{user_id}"

    @staticmethod
    def _messages_key(user_id: str, session_id: str) -> str:
        return f"messages:{user_id}:{session_id}"

    def list_sessions(self, user_id: str) -> List[ChatSession]:
        raw = self._store.get(self._sessions_key(user_id)) or []
        return [ChatSession.model_validate(item) for item in raw]

    def save_session(self, user_id: str, session_id: str, title: Optional[str] = None) -> None:
        sessions = self.list_sessions(user_id)
        now = self._clock()

        existing = next((s for s in sessions if s.id == session_id), None)
        if existing is not None:
            sessions.remove(existing)
            existing.updated_at = now
            if title:
                existing.title = title
            session = existing
        else:
            session = ChatSession(
                id=session_id, title=title or DEFAULT_TITLE, created_at=now, updated_at=now
            )
        # Most recently updated first, oldest dropped past the cap
        sessions.insert(0, session)
        trimmed = sessions[: self._max_sessions]
        self._store.set(
            self._sessions_key(user_id), [s.model_dump(by_alias=True) for s in trimmed]
        )

    def get_messages(self, user_id: str, session_id: str) -> List[Message]:
        raw = self._store.get(self._messages_key(user_id, session_id)) or []
        return [Message.model_validate(item) for item in raw]

    def save_messages(self, user_id: str, session_id: str, messages: List[Message]) -> None:
        self._store.set(
            self._messages_key(user_id, session_id),
            [m.model_dump(exclude_none=True) for m in messages],
        )

    def delete_session(self, user_id: str, session_id: str) -> None:
        remaining = [s for s in self.list_sessions(user_id) if s.id != session_id]
        self._store.set(
            self._sessions_key(user_id), [s.model_dump(by_alias=True) for s in remaining]
        )
        self._store.delete(self._messages_key(user_id, session_id))
