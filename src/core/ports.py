"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for the chat API, the LLM, and storage so
that the core can be reused with different vendors and backends.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Iterable, Optional, Protocol

from core.models import (
    Character,
    PollSelection,
    ProcessedMessageRecord,
    RemoteMessage,
    ReplyOutcome,
    Room,
)


class ChatClientPort(Protocol):
    """Operations required from the remote character-chat API."""

    async def list_characters(self) -> list[Character]:
        ...

    async def list_rooms(self) -> list[Room]:
        ...

    async def get_room(self, room_id: str) -> Room:
        ...

    async def create_room(
        self, name: str, members: Iterable[str], backchanneling_enabled: bool
    ) -> Room:
        ...

    async def add_member(self, room_id: str, character_id: str) -> Room:
        ...

    async def remove_member(self, room_id: str, character_id: str) -> Room:
        ...

    async def fetch_messages(
        self, room_id: Optional[str] = None, character_id: Optional[str] = None
    ) -> list[RemoteMessage]:
        ...

    async def request_reply(self, room_id: str, character_id: Optional[str]) -> ReplyOutcome:
        ...

    async def send_message(
        self, character_id: str, room_id: Optional[str], text: str
    ) -> dict[str, Any]:
        ...


class AnswerEnginePort(Protocol):
    """Operations required from the LLM provider."""

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        ...

    async def answer(self, question: str) -> str:
        ...


class MessageStorePort(Protocol):
    """Storage operations for processed messages."""

    def insert(self, record: ProcessedMessageRecord) -> ProcessedMessageRecord:
        ...

    def exists_by_character_and_text(self, character_id: str, text: str) -> bool:
        ...

    def exists_by_room_and_text(self, room_id: str, text: str) -> bool:
        ...

    def list_recent(self, limit: int = 50) -> list[ProcessedMessageRecord]:
        ...

    def stream_inserts(self) -> AsyncIterator[ProcessedMessageRecord]:
        ...


class SelectionStorePort(Protocol):
    """Storage operations for the set of polled character/room pairs."""

    def list_selections(self) -> list[PollSelection]:
        ...

    def add_selection(self, selection: PollSelection) -> None:
        ...

    def remove_selection(self, character_id: str, room_id: Optional[str]) -> bool:
        ...

    def rebind_room(self, old_room_id: str, new_room: Room) -> int:
        ...
