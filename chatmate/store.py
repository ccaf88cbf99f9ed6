"""SQLite-backed storage for long-term memories, chat history and embeddings."""

import logging
import os
import sqlite3
import struct
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from .embeddings import cosine_similarity
from .errors import DatabaseError

logger = logging.getLogger(__name__)

SUMMARY_TIMESTAMP = "1970-01-01T00:00:00Z"


def _fts_sync_triggers(table: str, fts: str, rowid: str, columns: Sequence[str],
                       *, on_update: bool) -> list[str]:
    """Triggers that mirror inserts, deletes (and optionally updates) into an FTS table."""
    cols = ", ".join(columns)
    new_values = ", ".join(f"new.{name}" for name in (rowid, *columns))
    old_values = ", ".join(f"old.{name}" for name in (rowid, *columns))
    add = f"INSERT INTO {fts}(rowid, {cols}) VALUES ({new_values});"
    remove = f"INSERT INTO {fts}({fts}, rowid, {cols}) VALUES ('delete', {old_values});"

    events = [("ai", "INSERT", add), ("ad", "DELETE", remove)]
    if on_update:
        events.append(("au", "UPDATE", f"{remove} {add}"))
    return [
        f"CREATE TRIGGER IF NOT EXISTS {table}_{suffix} AFTER {event} ON {table} "
        f"BEGIN {body} END"
        for suffix, event, body in events
    ]


def _build_schema() -> str:
    statements = [
        "PRAGMA journal_mode = WAL",
        "PRAGMA foreign_keys = ON",
        "CREATE TABLE IF NOT EXISTS core_memories ("
        "id TEXT PRIMARY KEY, key TEXT UNIQUE NOT NULL, content TEXT NOT NULL, "
        "category TEXT NOT NULL DEFAULT 'core', "
        "created_at TEXT NOT NULL, updated_at TEXT NOT NULL)",
        "CREATE TABLE IF NOT EXISTS messages ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, chat_id INTEGER NOT NULL, "
        "thread_id INTEGER, role TEXT NOT NULL, content TEXT NOT NULL, "
        "timestamp TEXT NOT NULL)",
        "CREATE INDEX IF NOT EXISTS idx_messages_session "
        "ON messages(chat_id, thread_id, timestamp)",
        "CREATE TABLE IF NOT EXISTS memory_embeddings ("
        "key TEXT PRIMARY KEY REFERENCES core_memories(key) ON DELETE CASCADE, "
        "embedding BLOB NOT NULL, updated_at TEXT NOT NULL)",
        "CREATE VIRTUAL TABLE IF NOT EXISTS core_memories_fts USING fts5("
        "key, content, category, content=core_memories, content_rowid=rowid)",
        *_fts_sync_triggers("core_memories", "core_memories_fts", "rowid",
                            ("key", "content", "category"), on_update=True),
        "CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5("
        "role, content, content=messages, content_rowid=id)",
        *_fts_sync_triggers("messages", "messages_fts", "id",
                            ("role", "content"), on_update=False),
    ]
    # Re-index anything stored before the FTS tables existed.
    statements += [
        f"INSERT OR IGNORE INTO {fts}({fts}) VALUES('rebuild')"
        for fts in ("core_memories_fts", "messages_fts")
    ]
    return ";\n".join(statements) + ";\n"


_SCHEMA = _build_schema()


@dataclass
class CoreMemory:
    key: str
    content: str
    category: str


@dataclass
class ChatMessage:
    role: str
    content: str
    timestamp: str


def embedding_to_blob(embedding: Sequence[float]) -> bytes:
    """Encode a vector as little-endian 32-bit floats."""
    return struct.pack(f"<{len(embedding)}f", *embedding)


def blob_to_embedding(blob: bytes) -> list[float]:
    """Decode little-endian 32-bit floats; trailing partial bytes are ignored."""
    usable = len(blob) - len(blob) % 4
    return list(struct.unpack(f"<{usable // 4}f", blob[:usable]))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _session_filter(chat_id: int, thread_id: int | None) -> tuple[str, dict]:
    """WHERE fragment selecting one chat session (a thread or the main chat)."""
    if thread_id is None:
        return "chat_id = :chat AND thread_id IS NULL", {"chat": chat_id}
    return "chat_id = :chat AND thread_id = :thread", {"chat": chat_id, "thread": thread_id}


@contextmanager
def _db_errors() -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise DatabaseError(str(exc)) from exc


class MemoryStore:
    """Persistent memories, chat history and full-text/semantic search."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    @classmethod
    async def open(cls, db_path: str | os.PathLike[str]) -> "MemoryStore":
        """Open (creating if needed) the database and its schema."""
        parent = Path(db_path).parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DatabaseError(f"cannot create {parent}: {exc}") from exc

        with _db_errors():
            conn = await aiosqlite.connect(os.fspath(db_path))
            try:
                await conn.executescript(_SCHEMA)
                await conn.commit()
            except BaseException:
                await conn.close()
                raise
        return cls(conn)

    async def close(self) -> None:
        with _db_errors():
            await self._conn.close()

    async def __aenter__(self) -> "MemoryStore":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _fetch(self, sql: str, params: dict | tuple = ()) -> list[tuple]:
        with _db_errors():
            async with self._conn.execute(sql, params) as cursor:
                return [tuple(row) async for row in cursor]

    async def _write(self, sql: str, params: dict | tuple = ()) -> int:
        with _db_errors():
            cursor = await self._conn.execute(sql, params)
            await self._conn.commit()
            return cursor.rowcount

    async def store_memory(self, key: str, content: str, category: str) -> None:
        """Insert a memory, or update content and category of an existing key."""
        await self._write(
            "INSERT INTO core_memories "
            "(id, key, content, category, created_at, updated_at) "
            "VALUES (:id, :key, :content, :category, :now, :now) "
            "ON CONFLICT(key) DO UPDATE SET content = excluded.content, "
            "category = excluded.category, updated_at = excluded.updated_at",
            {"id": str(uuid.uuid4()), "key": key, "content": content,
             "category": category, "now": _now()},
        )
        logger.debug("memory stored: %s", key)

    async def forget_memory(self, key: str) -> bool:
        """Delete a memory; return whether anything was deleted."""
        removed = await self._write("DELETE FROM core_memories WHERE key = :key", {"key": key})
        return removed > 0

    async def load_all_memories(self) -> list[CoreMemory]:
        rows = await self._fetch("SELECT key, content, category FROM core_memories ORDER BY key")
        return [CoreMemory(*row) for row in rows]

    async def search_memories(self, query: str, limit: int) -> list[CoreMemory]:
        """Full-text search over memories, best match first."""
        rows = await self._fetch(
            "SELECT mem.key, mem.content, mem.category FROM core_memories_fts "
            "JOIN core_memories AS mem ON mem.rowid = core_memories_fts.rowid "
            "WHERE core_memories_fts MATCH :query ORDER BY rank LIMIT :limit",
            {"query": query, "limit": limit},
        )
        return [CoreMemory(*row) for row in rows]

    async def search_messages(self, query: str, chat_id: int | None,
                              limit: int) -> list[ChatMessage]:
        """Full-text search over chat messages, optionally within one chat."""
        params: dict = {"query": query, "limit": limit}
        chat_filter = ""
        if chat_id is not None:
            chat_filter = " AND msg.chat_id = :chat"
            params["chat"] = chat_id
        rows = await self._fetch(
            "SELECT msg.role, msg.content, msg.timestamp FROM messages_fts "
            "JOIN messages AS msg ON msg.id = messages_fts.rowid "
            f"WHERE messages_fts MATCH :query{chat_filter} ORDER BY rank LIMIT :limit",
            params,
        )
        return [ChatMessage(*row) for row in rows]

    async def save_embedding(self, key: str, embedding: Sequence[float]) -> None:
        """Store or replace the embedding for an existing memory key."""
        await self._write(
            "INSERT INTO memory_embeddings (key, embedding, updated_at) "
            "VALUES (:key, :blob, :now) "
            "ON CONFLICT(key) DO UPDATE SET embedding = excluded.embedding, "
            "updated_at = excluded.updated_at",
            {"key": key, "blob": embedding_to_blob(embedding), "now": _now()},
        )

    async def load_all_embeddings(self) -> list[tuple[str, list[float]]]:
        rows = await self._fetch("SELECT key, embedding FROM memory_embeddings")
        return [(key, blob_to_embedding(blob)) for key, blob in rows]

    async def search_by_embedding(self, query_embedding: Sequence[float],
                                  limit: int) -> list[tuple[CoreMemory, float]]:
        """Return memories ranked by cosine similarity to the query vector."""
        embeddings = await self.load_all_embeddings()
        memories = {m.key: m for m in await self.load_all_memories()}
        scored = [
            (memories[key], cosine_similarity(query_embedding, vector))
            for key, vector in embeddings
            if key in memories
        ]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    async def compress_messages(self, chat_id: int, thread_id: int | None,
                                count: int, summary: str) -> None:
        """Replace the oldest `count` messages of a session with a summary."""
        where, params = _session_filter(chat_id, thread_id)
        with _db_errors():
            try:
                cursor = await self._conn.execute(
                    "DELETE FROM messages WHERE id IN ("
                    f"SELECT id FROM messages WHERE {where} ORDER BY id LIMIT :count)",
                    {**params, "count": count},
                )
                if cursor.rowcount <= 0:
                    await self._conn.rollback()
                    return
                await self._conn.execute(
                    "INSERT INTO messages (chat_id, thread_id, role, content, timestamp) "
                    "VALUES (:chat, :thread, 'system', :summary, :stamp)",
                    {"chat": chat_id, "thread": thread_id, "summary": summary,
                     "stamp": SUMMARY_TIMESTAMP},
                )
                await self._conn.commit()
            except BaseException:
                await self._conn.rollback()
                raise

    async def save_message(self, chat_id: int, thread_id: int | None,
                           role: str, content: str) -> None:
        await self._write(
            "INSERT INTO messages (chat_id, thread_id, role, content, timestamp) "
            "VALUES (:chat, :thread, :role, :content, :now)",
            {"chat": chat_id, "thread": thread_id, "role": role,
             "content": content, "now": _now()},
        )

    async def load_history(self, chat_id: int, thread_id: int | None,
                           limit: int) -> list[ChatMessage]:
        """Return the latest `limit` messages of a session, oldest first."""
        where, params = _session_filter(chat_id, thread_id)
        rows = await self._fetch(
            f"SELECT role, content, timestamp FROM messages WHERE {where} "
            "ORDER BY id DESC LIMIT :limit",
            {**params, "limit": limit},
        )
        return [ChatMessage(*row) for row in reversed(rows)]