from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, TypeVar
from uuid import uuid4

from src.chat.errors import StorageError

from .models import DEFAULT_SESSION_TITLE, MessageRecord, SessionRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


_SESSIONS_DDL = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    last_message_preview TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_MESSAGES_DDL = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    reasoning_trace TEXT,
    tool_call_results TEXT,
    summary TEXT,
    seq INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
);
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_messages_session_seq ON messages(session_id, seq);",
]

_MESSAGE_COLUMNS = (
    "id, session_id, role, content, reasoning_trace, tool_call_results, summary, seq, created_at"
)
_SESSION_COLUMNS = "id, title, last_message_preview, created_at, updated_at"

# Columns that may be written after a message row has been created.
UPDATABLE_MESSAGE_FIELDS = frozenset({"reasoning_trace", "tool_call_results", "summary"})


def _ensure_pragmas(connection: sqlite3.Connection) -> None:
    connection.execute("PRAGMA foreign_keys = ON;")
    connection.execute("PRAGMA journal_mode = WAL;")


class SQLiteSessionStore:
    """SQLite-backed repository for chat sessions and messages.

    Every public method raises :class:`StorageError` when the database
    operation fails.
    """

    def __init__(self, db_path: str) -> None:
        path = Path(db_path)
        if not path.is_absolute():
            path = Path.cwd() / path
        if path.suffix != ".db":
            path = path.with_suffix(".db")
        self._db_path = str(path)
        self._write_lock = asyncio.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    async def init(self) -> None:
        """Initialise database schema."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        def _init() -> None:
            with sqlite3.connect(self._db_path) as connection:
                _ensure_pragmas(connection)
                connection.execute(_SESSIONS_DDL)
                connection.execute(_MESSAGES_DDL)
                for statement in _CREATE_INDEXES:
                    connection.execute(statement)
                connection.commit()

        await self._run(_init)
        logger.info("Session database initialised at %s", self._db_path)

    async def close(self) -> None:  # pragma: no cover - connections are per call
        return None

    # Sessions

    async def create_session(self, *, title: Optional[str] = None) -> SessionRecord:
        session_id = uuid4().hex
        title = title or DEFAULT_SESSION_TITLE
        now = _utc_now_str()

        async with self._write_lock:
            await self._run(
                self._execute,
                f"INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
                (session_id, title, None, now, now),
            )

        return SessionRecord(
            id=session_id,
            title=title,
            created_at=_parse_ts(now),
            updated_at=_parse_ts(now),
            last_message_preview=None,
        )

    async def list_sessions(self) -> list[SessionRecord]:
        rows = await self._run(
            self._fetchall,
            f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY updated_at DESC",
        )
        return [self._row_to_session(row) for row in rows]

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        row = await self._run(
            self._fetchone,
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
            (session_id,),
        )
        return self._row_to_session(row) if row else None

    async def rename_session(self, session_id: str, title: str) -> SessionRecord:
        now = _utc_now_str()
        async with self._write_lock:
            await self._run(
                self._execute,
                "UPDATE sessions SET title = ?, updated_at = ? WHERE id = ?",
                (title, now, session_id),
            )
        session = await self.get_session(session_id)
        if session is None:
            raise StorageError(f"Session {session_id} not found after rename")
        return session

    async def delete_session(self, session_id: str) -> None:
        async with self._write_lock:
            await self._run(
                self._execute,
                "DELETE FROM sessions WHERE id = ?",
                (session_id,),
            )

    # Messages

    async def get_messages(self, session_id: str) -> list[MessageRecord]:
        rows = await self._run(
            self._fetchall,
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE session_id = ? ORDER BY seq ASC",
            (session_id,),
        )
        return [self._row_to_message(row) for row in rows]

    async def get_history(self, session_id: str, *, limit: int = 200) -> list[MessageRecord]:
        """Return the most recent ``limit`` messages of a session, oldest first."""
        rows = await self._run(
            self._fetchall,
            f"SELECT {_MESSAGE_COLUMNS} FROM ("
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE session_id = ? ORDER BY seq DESC LIMIT ?"
            ") ORDER BY seq ASC",
            (session_id, limit),
        )
        return [self._row_to_message(row) for row in rows]

    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        row = await self._run(
            self._fetchone,
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
            (message_id,),
        )
        return self._row_to_message(row) if row else None

    async def append_message(self, *, session_id: str, role: str, content: str) -> MessageRecord:
        message_id = uuid4().hex
        now = _utc_now_str()

        async with self._write_lock:
            def _insert() -> int:
                with sqlite3.connect(self._db_path) as connection:
                    connection.row_factory = sqlite3.Row
                    _ensure_pragmas(connection)

                    cursor = connection.execute(
                        "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE session_id = ?",
                        (session_id,),
                    )
                    row = cursor.fetchone()
                    next_seq = int(row["max_seq"] or 0) + 1

                    connection.execute(
                        "INSERT INTO messages (id, session_id, role, content, seq, created_at)"
                        " VALUES (?, ?, ?, ?, ?, ?)",
                        (message_id, session_id, role, content, next_seq, now),
                    )
                    connection.execute(
                        "UPDATE sessions SET updated_at = ?, last_message_preview = ? WHERE id = ?",
                        (now, content[:200], session_id),
                    )
                    connection.commit()
                    return next_seq

            seq = await self._run(_insert)

        return MessageRecord(
            id=message_id,
            session_id=session_id,
            role=role,
            content=content,
            reasoning_trace=None,
            tool_call_results=None,
            summary=None,
            seq=seq,
            created_at=_parse_ts(now),
        )

    async def update_message(self, message_id: str, field: str, value: Any) -> bool:
        """Set one post-creation column of a message.

        Returns ``False`` when no row was changed: the id is unknown, or the
        field is ``summary`` and the row already has one.
        """
        if field not in UPDATABLE_MESSAGE_FIELDS:
            raise ValueError(f"Field {field!r} cannot be updated")
        if field == "summary":
            return await self.update_summaries([(message_id, value)]) == 1

        if field == "tool_call_results" and value is not None:
            value = json.dumps(list(value), ensure_ascii=False)
        async with self._write_lock:
            changed = await self._run(
                self._execute,
                f"UPDATE messages SET {field} = ? WHERE id = ?",
                (value, message_id),
            )
        return changed > 0

    async def update_summaries(self, summaries: Iterable[tuple[str, str]]) -> int:
        """Write a batch of summaries in one transaction.

        A summary is only written to rows that do not have one yet. Returns the
        number of rows changed.
        """
        params = [(summary, message_id) for message_id, summary in summaries]
        if not params:
            return 0

        def _update() -> int:
            with sqlite3.connect(self._db_path) as connection:
                _ensure_pragmas(connection)
                changed = 0
                for param in params:
                    cursor = connection.execute(
                        "UPDATE messages SET summary = ? "
                        "WHERE id = ? AND (summary IS NULL OR summary = '')",
                        param,
                    )
                    changed += cursor.rowcount
                connection.commit()
                return changed

        async with self._write_lock:
            return await self._run(_update)

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    def _execute(self, query: str, params: tuple = ()) -> int:
        with sqlite3.connect(self._db_path) as connection:
            _ensure_pragmas(connection)
            cursor = connection.execute(query, params)
            connection.commit()
            return cursor.rowcount

    def _fetchall(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        with sqlite3.connect(self._db_path) as connection:
            connection.row_factory = sqlite3.Row
            _ensure_pragmas(connection)
            cursor = connection.execute(query, params)
            return cursor.fetchall()

    def _fetchone(self, query: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with sqlite3.connect(self._db_path) as connection:
            connection.row_factory = sqlite3.Row
            _ensure_pragmas(connection)
            cursor = connection.execute(query, params)
            return cursor.fetchone()

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> SessionRecord:
        return SessionRecord(
            id=row["id"],
            title=row["title"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            last_message_preview=row["last_message_preview"],
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> MessageRecord:
        return MessageRecord(
            id=row["id"],
            session_id=row["session_id"],
            role=row["role"],
            content=row["content"],
            reasoning_trace=row["reasoning_trace"],
            tool_call_results=json.loads(row["tool_call_results"]) if row["tool_call_results"] else None,
            summary=row["summary"] or None,
            seq=row["seq"],
            created_at=_parse_ts(row["created_at"]),
        )


def _utc_now_str() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def _parse_ts(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1]
    return datetime.fromisoformat(value)
