"""SQLite storage adapter.

Implements the core MessageStorePort and SelectionStorePort using a simple
SQLite database, plus the per-user credential table.

Message and selection rows belong to one caller identity. A storage instance
is bound to a single identity (``for_user``); the operator context uses the
empty string as its key.
"""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timezone
from typing import Any, Optional

from core.models import MessageKind, PollSelection, ProcessedMessageRecord, Room

OPERATOR_KEY = ""


def _user_key(user_id: Optional[str]) -> str:
    return user_id or OPERATOR_KEY


class _InsertStream:
    """Async iterator over records inserted after the stream was opened.

    Never ends on its own; call ``aclose`` to unsubscribe.
    """

    def __init__(self, subscribers: list[tuple[str, asyncio.Queue]], user_key: str) -> None:
        self._entry: tuple[str, asyncio.Queue] = (user_key, asyncio.Queue())
        self._subscribers = subscribers
        subscribers.append(self._entry)

    def __aiter__(self) -> "_InsertStream":
        return self

    async def __anext__(self) -> ProcessedMessageRecord:
        return await self._entry[1].get()

    async def aclose(self) -> None:
        if self._entry in self._subscribers:
            self._subscribers.remove(self._entry)


def _record_from_row(row: sqlite3.Row) -> ProcessedMessageRecord:
    return ProcessedMessageRecord(
        id=int(row["id"]),
        character_id=row["character_id"],
        character_name=row["character_name"] or "",
        original_text=row["original_text"],
        extracted_question=row["extracted_question"],
        answer=row["answer"],
        kind=MessageKind(row["kind"]),
        room_id=row["room_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the storage port contracts."""

    def __init__(
        self,
        db_path: str,
        user_id: Optional[str] = None,
        subscribers: Optional[list[tuple[str, asyncio.Queue]]] = None,
    ) -> None:
        self._db_path = db_path
        self._user_key = _user_key(user_id)
        self._subscribers: list[tuple[str, asyncio.Queue]] = (
            subscribers if subscribers is not None else []
        )

    @property
    def user_id(self) -> Optional[str]:
        return self._user_key or None

    def for_user(self, user_id: Optional[str]) -> "SQLiteStorage":
        """Return a view of the same database bound to ``user_id``."""

        return SQLiteStorage(self._db_path, user_id=user_id, subscribers=self._subscribers)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - processed_messages: append-only log of handled messages (dedup + audit)
        - poll_selections: character/room pairs subject to automatic polling
        - user_credentials: per-user API keys and model preference
        """

        with self._connect() as conn:
            # processed_messages is append-only; rows are never updated.
            # Fields:
            # - user_id: owning caller identity, '' for the operator
            # - character_id / original_text: the dedup key (raw text)
            # - extracted_question: monologue-stripped question, NULL otherwise
            # - answer: text sent back (AI answer or fixed prompt), NULL for passthrough
            # - kind: question-answered | passthrough | regular
            # - room_id: room context the reply went to, NULL for direct chat
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL DEFAULT '',
                    character_id TEXT NOT NULL,
                    character_name TEXT,
                    original_text TEXT NOT NULL,
                    extracted_question TEXT,
                    answer TEXT,
                    kind TEXT NOT NULL DEFAULT 'regular',
                    room_id TEXT,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_processed_messages_dedup
                ON processed_messages (user_id, character_id, original_text)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_processed_messages_room
                ON processed_messages (user_id, room_id, original_text)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_processed_messages_created_at
                ON processed_messages (user_id, created_at DESC)
                """
            )
            # room_id is '' for the default context so the primary key holds.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS poll_selections (
                    user_id TEXT NOT NULL DEFAULT '',
                    character_id TEXT NOT NULL,
                    room_id TEXT NOT NULL DEFAULT '',
                    character_name TEXT,
                    room_name TEXT,
                    created_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (user_id, character_id, room_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_credentials (
                    user_id TEXT PRIMARY KEY,
                    nomi_api_key TEXT,
                    llm_api_key TEXT,
                    llm_model TEXT,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )

    # Processed messages

    def insert(self, record: ProcessedMessageRecord) -> ProcessedMessageRecord:
        """Append a record and push it to this identity's open insert streams."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO processed_messages (
                    user_id,
                    character_id,
                    character_name,
                    original_text,
                    extracted_question,
                    answer,
                    kind,
                    room_id,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self._user_key,
                    record.character_id,
                    record.character_name,
                    record.original_text,
                    record.extracted_question,
                    record.answer,
                    record.kind.value,
                    record.room_id,
                    record.created_at.isoformat(),
                ),
            )
            row_id = cur.lastrowid

        stored = ProcessedMessageRecord(
            id=row_id,
            character_id=record.character_id,
            character_name=record.character_name,
            original_text=record.original_text,
            extracted_question=record.extracted_question,
            answer=record.answer,
            kind=record.kind,
            room_id=record.room_id,
            created_at=record.created_at,
        )
        for user_key, queue in list(self._subscribers):
            if user_key == self._user_key:
                queue.put_nowait(stored)
        return stored

    def exists_by_character_and_text(self, character_id: str, text: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM processed_messages
                WHERE user_id = ? AND character_id = ? AND original_text = ?
                LIMIT 1
                """,
                (self._user_key, character_id, text),
            ).fetchone()
        return row is not None

    def exists_by_room_and_text(self, room_id: str, text: str) -> bool:
        """Dedup check for room-wide history whose speaker is unknown."""

        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM processed_messages
                WHERE user_id = ? AND room_id = ? AND original_text = ?
                LIMIT 1
                """,
                (self._user_key, room_id, text),
            ).fetchone()
        return row is not None

    def list_recent(self, limit: int = 50) -> list[ProcessedMessageRecord]:
        """Return up to ``limit`` records, newest first."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM processed_messages
                WHERE user_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (self._user_key, limit),
            ).fetchall()
        return [_record_from_row(row) for row in rows]

    def stream_inserts(self) -> _InsertStream:
        """Subscribe to records inserted for this identity from now on."""

        return _InsertStream(self._subscribers, self._user_key)

    # Poll selections

    def list_selections(self) -> list[PollSelection]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM poll_selections
                WHERE user_id = ?
                ORDER BY created_at, character_id
                """,
                (self._user_key,),
            ).fetchall()
        return [
            PollSelection(
                character_id=row["character_id"],
                room_id=row["room_id"] or None,
                character_name=row["character_name"] or "",
                room_name=row["room_name"] or "",
            )
            for row in rows
        ]

    def add_selection(self, selection: PollSelection) -> None:
        """Upsert a selection; the (character, room) pair is the key."""

        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO poll_selections (
                    user_id, character_id, room_id, character_name, room_name, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, character_id, room_id) DO UPDATE SET
                    character_name = excluded.character_name,
                    room_name = excluded.room_name
                """,
                (
                    self._user_key,
                    selection.character_id,
                    selection.room_id or "",
                    selection.character_name,
                    selection.room_name,
                    now.isoformat(),
                ),
            )

    def remove_selection(self, character_id: str, room_id: Optional[str]) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM poll_selections
                WHERE user_id = ? AND character_id = ? AND room_id = ?
                """,
                (self._user_key, character_id, room_id or ""),
            )
            return cur.rowcount > 0

    def rebind_room(self, old_room_id: str, new_room: Room) -> int:
        """Point every selection on ``old_room_id`` at ``new_room``."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE OR REPLACE poll_selections
                SET room_id = ?, room_name = ?
                WHERE user_id = ? AND room_id = ?
                """,
                (new_room.id, new_room.name, self._user_key, old_room_id),
            )
            return cur.rowcount

    # Credentials

    def get_credentials(self, user_id: str) -> Optional[dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT nomi_api_key, llm_api_key, llm_model
                FROM user_credentials WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        return dict(row) if row else None

    def save_credentials(
        self,
        user_id: str,
        nomi_api_key: Optional[str] = None,
        llm_api_key: Optional[str] = None,
        llm_model: Optional[str] = None,
    ) -> None:
        """Upsert credentials; None leaves the stored value unchanged."""

        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_credentials (
                    user_id, nomi_api_key, llm_api_key, llm_model, updated_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    nomi_api_key = COALESCE(excluded.nomi_api_key, nomi_api_key),
                    llm_api_key = COALESCE(excluded.llm_api_key, llm_api_key),
                    llm_model = COALESCE(excluded.llm_model, llm_model),
                    updated_at = excluded.updated_at
                """,
                (user_id, nomi_api_key, llm_api_key, llm_model, now.isoformat()),
            )
