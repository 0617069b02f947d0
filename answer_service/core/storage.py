from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from answer_service.core.errors import CollaboratorFailure
from answer_service.core.models import Chat, Message, MessageAuthor, StoreConfig, VectorScore, parse_time, split_id
from answer_service.core.settings import Settings

try:
    import pymysql  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    pymysql = None

logger = logging.getLogger(__name__)
_T = TypeVar("_T")


class MessageStore(Protocol):
    def get(self, message_id: str) -> Optional[Message]: ...

    def get_recent(self, chat_name: str, limit: int) -> List[Message]: ...

    def create(self, message: Message) -> bool: ...

    def update(self, message_id: str, message: Message) -> bool: ...

    def count_since(self, user: str, minutes: int) -> int: ...


class ChatStore(Protocol):
    def get_chat(self, chat_id: str) -> Optional[Chat]: ...


class StoreConfigRepository(Protocol):
    def get_default(self, owner: str) -> Optional[StoreConfig]: ...


class Storage(MessageStore, ChatStore, StoreConfigRepository, Protocol):
    pass


def _window_start(minutes: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=max(0, minutes))


class InMemoryStorage:
    """Thread-safe storage used for local development and tests."""

    def __init__(self) -> None:
        self._messages: Dict[str, Message] = {}
        self._chats: Dict[str, Chat] = {}
        self._stores: Dict[str, StoreConfig] = {}
        self._lock = Lock()

    def add_chat(self, chat: Chat) -> None:
        with self._lock:
            self._chats[chat.id] = chat

    def add_store(self, store: StoreConfig) -> None:
        with self._lock:
            self._stores[store.owner] = store

    def get(self, message_id: str) -> Optional[Message]:
        with self._lock:
            return self._messages.get(message_id)

    def get_recent(self, chat_name: str, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        with self._lock:
            rows = [message for message in self._messages.values() if message.chat == chat_name]
        rows.sort(key=lambda item: item.created_time)
        return rows[-limit:]

    def create(self, message: Message) -> bool:
        with self._lock:
            if message.id in self._messages:
                return False
            self._messages[message.id] = message
            return True

    def update(self, message_id: str, message: Message) -> bool:
        with self._lock:
            if message_id not in self._messages:
                return False
            self._messages.pop(message_id)
            self._messages[message.id] = message
            return True

    def count_since(self, user: str, minutes: int) -> int:
        since = _window_start(minutes)
        with self._lock:
            rows = list(self._messages.values())
        count = 0
        for message in rows:
            if message.user != user or message.is_ai_authored:
                continue
            created = parse_time(message.created_time)
            if created is not None and created >= since:
                count += 1
        return count

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self._lock:
            return self._chats.get(chat_id)

    def get_default(self, owner: str) -> Optional[StoreConfig]:
        with self._lock:
            return self._stores.get(owner)


_MESSAGE_COLUMNS = "owner, name, created_time, `user`, chat, author, reply_to, text, vector_scores"


def _encode_scores(scores: List[VectorScore]) -> str:
    return json.dumps([item.to_dict() for item in scores], ensure_ascii=False)


def _decode_scores(raw: Any) -> List[VectorScore]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw) if isinstance(raw, str) else raw
    except Exception:
        logger.warning("invalid vector_scores payload: %r", raw)
        return []
    if not isinstance(parsed, list):
        return []
    return [VectorScore.from_dict(item) for item in parsed if isinstance(item, dict)]


def _message_from_row(row: Dict[str, Any]) -> Message:
    return Message(
        owner=str(row.get("owner") or ""),
        name=str(row.get("name") or ""),
        created_time=str(row.get("created_time") or ""),
        user=str(row.get("user") or ""),
        chat=str(row.get("chat") or ""),
        author=str(row.get("author") or ""),
        reply_to=str(row.get("reply_to") or ""),
        text=str(row.get("text") or ""),
        vector_scores=_decode_scores(row.get("vector_scores")),
    )


def _message_params(message: Message) -> tuple:
    return (
        message.owner,
        message.name,
        message.created_time,
        message.user,
        message.chat,
        message.author,
        message.reply_to,
        message.text,
        _encode_scores(message.vector_scores),
    )


class MySQLStorage:
    """pymysql-backed storage. Opens one connection per call; errors propagate."""

    def __init__(self, settings: Settings) -> None:
        if pymysql is None:
            raise RuntimeError("pymysql dependency is required when ANS_STORAGE_BACKEND=mysql")
        self._settings = settings

    def _connect(self):
        timeout = max(0.05, self._settings.db_connect_timeout_ms / 1000.0)
        return pymysql.connect(
            host=self._settings.db_host,
            port=self._settings.db_port,
            user=self._settings.db_user,
            password=self._settings.db_password,
            database=self._settings.db_name,
            charset="utf8mb4",
            autocommit=True,
            cursorclass=pymysql.cursors.DictCursor,
            connect_timeout=timeout,
            read_timeout=timeout,
            write_timeout=timeout,
        )

    def _fetchone(self, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
        connection = self._connect()
        try:
            with connection.cursor() as cursor:
                cursor.execute(sql, params)
                row = cursor.fetchone()
        finally:
            connection.close()
        return row if isinstance(row, dict) else None

    def _fetchall(self, sql: str, params: tuple) -> List[Dict[str, Any]]:
        connection = self._connect()
        try:
            with connection.cursor() as cursor:
                cursor.execute(sql, params)
                rows = cursor.fetchall()
        finally:
            connection.close()
        return [row for row in rows or [] if isinstance(row, dict)]

    def _execute(self, sql: str, params: tuple) -> int:
        connection = self._connect()
        try:
            with connection.cursor() as cursor:
                affected = cursor.execute(sql, params)
        finally:
            connection.close()
        return int(affected or 0)

    def get(self, message_id: str) -> Optional[Message]:
        owner, name = split_id(message_id)
        row = self._fetchone(
            f"SELECT {_MESSAGE_COLUMNS} FROM message WHERE owner=%s AND name=%s LIMIT 1",
            (owner, name),
        )
        return _message_from_row(row) if row else None

    def get_recent(self, chat_name: str, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        rows = self._fetchall(
            f"SELECT {_MESSAGE_COLUMNS} FROM message WHERE chat=%s ORDER BY created_time DESC LIMIT %s",
            (chat_name, limit),
        )
        messages = [_message_from_row(row) for row in rows]
        messages.reverse()
        return messages

    def create(self, message: Message) -> bool:
        affected = self._execute(
            f"INSERT INTO message ({_MESSAGE_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)",
            _message_params(message),
        )
        return affected > 0

    def update(self, message_id: str, message: Message) -> bool:
        owner, name = split_id(message_id)
        affected = self._execute(
            """
            UPDATE message
            SET owner=%s, name=%s, created_time=%s, `user`=%s, chat=%s,
                author=%s, reply_to=%s, text=%s, vector_scores=%s
            WHERE owner=%s AND name=%s
            """,
            _message_params(message) + (owner, name),
        )
        return affected > 0

    def count_since(self, user: str, minutes: int) -> int:
        since = _window_start(minutes).isoformat(timespec="milliseconds")
        row = self._fetchone(
            "SELECT COUNT(*) AS cnt FROM message WHERE `user`=%s AND author<>%s AND created_time>=%s",
            (user, MessageAuthor.AI.value, since),
        )
        return int((row or {}).get("cnt") or 0)

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        owner, name = split_id(chat_id)
        row = self._fetchone(
            "SELECT owner, name, type, `user`, user2 FROM chat WHERE owner=%s AND name=%s LIMIT 1",
            (owner, name),
        )
        if not row:
            return None
        return Chat(
            owner=str(row.get("owner") or ""),
            name=str(row.get("name") or ""),
            type=str(row.get("type") or ""),
            user=str(row.get("user") or ""),
            user2=str(row.get("user2") or ""),
        )

    def get_default(self, owner: str) -> Optional[StoreConfig]:
        row = self._fetchone(
            """
            SELECT owner, name, welcome, prompt, memory_limit, limit_minutes, frequency
            FROM store
            WHERE owner=%s AND is_default=1
            LIMIT 1
            """,
            (owner,),
        )
        if not row:
            return None
        return StoreConfig(
            owner=str(row.get("owner") or ""),
            name=str(row.get("name") or ""),
            welcome=str(row.get("welcome") or ""),
            prompt=str(row.get("prompt") or ""),
            memory_limit=int(row.get("memory_limit") or 0),
            limit_minutes=int(row.get("limit_minutes") or 0),
            frequency=int(row.get("frequency") or 0),
        )


def build_storage(settings: Settings) -> Storage:
    if settings.storage_backend == "mysql":
        return MySQLStorage(settings)
    return InMemoryStorage()


async def run_storage(fn: Callable[..., _T], *args: Any) -> _T:
    """Run a blocking storage call off the event loop.

    Storage errors are surfaced verbatim as ``CollaboratorFailure``.
    """
    try:
        return await asyncio.to_thread(fn, *args)
    except Exception as exc:
        raise CollaboratorFailure(str(exc) or exc.__class__.__name__) from exc
