"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to the Nomi or LLM payload shapes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class MessageOrigin(str, Enum):
    CHARACTER = "character"
    USER = "user"


class MessageKind(str, Enum):
    """How a processed message was handled."""

    QUESTION_ANSWERED = "question-answered"
    PASSTHROUGH = "passthrough"
    REGULAR = "regular"


@dataclass(frozen=True)
class Character:
    id: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"uuid": self.id, "name": self.name}


@dataclass(frozen=True)
class Room:
    """Remote room snapshot. The id changes whenever a member is removed."""

    id: str
    name: str
    members: tuple[Character, ...] = ()
    backchanneling_enabled: bool = False

    @property
    def member_ids(self) -> frozenset[str]:
        return frozenset(member.id for member in self.members)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "backchannelingEnabled": self.backchanneling_enabled,
            "nomis": [member.to_dict() for member in self.members],
        }


@dataclass(frozen=True)
class RemoteMessage:
    """A message observed on the remote side. Never mutated.

    ``room_wide`` marks messages read from a whole-room history, which may come
    from any member; ``sender_id`` is the speaking character when the payload
    names one.
    """

    id: Optional[str]
    text: str
    origin: MessageOrigin
    sent_at: Optional[datetime] = None
    sender_id: Optional[str] = None
    room_wide: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "uuid": self.id,
            "text": self.text,
            "origin": self.origin.value,
            "nomiUuid": self.sender_id,
            "sentAt": self.sent_at.isoformat() if self.sent_at else None,
        }


@dataclass(frozen=True)
class MemberRemoval:
    """A removal result: the recreated room and the id that was deleted."""

    room: Room
    previous_room_id: str


@dataclass(frozen=True)
class ReplyOutcome:
    """Result of asking a character to speak in a room.

    ``pending`` is set when the remote reported the character is not ready yet;
    ``message`` may still be None on success when the remote sent no reply text.
    """

    message: Optional[RemoteMessage] = None
    pending: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProcessedMessageRecord:
    """Append-only record of a handled remote message (audit + dedup)."""

    character_id: str
    character_name: str
    original_text: str
    kind: MessageKind
    extracted_question: Optional[str] = None
    answer: Optional[str] = None
    room_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "nomiUuid": self.character_id,
            "nomiName": self.character_name,
            "messageText": self.original_text,
            "question": self.extracted_question,
            "answer": self.answer,
            "messageType": self.kind.value,
            "roomId": self.room_id,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class PollSelection:
    """A character/room pair chosen for automatic polling.

    ``room_id`` None means the character's default (direct chat) context.
    """

    character_id: str
    room_id: Optional[str] = None
    character_name: str = ""
    room_name: str = ""

    @property
    def key(self) -> tuple[str, Optional[str]]:
        return (self.character_id, self.room_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nomiUuid": self.character_id,
            "nomiName": self.character_name,
            "roomId": self.room_id,
            "roomName": self.room_name or "default",
        }


@dataclass
class PollReport:
    """Outcome of one poll pass, shaped for the ops entry point."""

    success: bool = True
    total_characters_checked: int = 0
    messages_found: int = 0
    processed_records: list[ProcessedMessageRecord] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    finished_at: Optional[datetime] = None

    @property
    def messages_processed(self) -> int:
        return len(self.processed_records)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "totalCharactersChecked": self.total_characters_checked,
            "messagesFound": self.messages_found,
            "messagesProcessed": self.messages_processed,
            "processedRecords": [record.to_dict() for record in self.processed_records],
            "timestamp": (self.finished_at or datetime.now(timezone.utc)).isoformat(),
        }
        if self.errors:
            payload["errors"] = list(self.errors)
        return payload
