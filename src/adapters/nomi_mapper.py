"""Nomi-to-core payload mapping adapter.

This keeps Nomi JSON field names out of the core pipeline.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from core.models import Character, MessageOrigin, RemoteMessage, Room


def character_from_payload(payload: dict[str, Any]) -> Character:
    return Character(id=str(payload["uuid"]), name=str(payload.get("name") or ""))


def room_from_payload(payload: dict[str, Any]) -> Room:
    """Build a core Room from a Nomi room object (``uuid``/``nomis``)."""

    return Room(
        id=str(payload["uuid"]),
        name=str(payload.get("name") or ""),
        members=tuple(character_from_payload(nomi) for nomi in payload.get("nomis") or []),
        backchanneling_enabled=bool(payload.get("backchannelingEnabled", False)),
    )


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def _sender_id(payload: dict[str, Any]) -> Optional[str]:
    for key in ("nomiUuid", "nomi", "sender"):
        value = payload.get(key)
        if isinstance(value, dict):
            value = value.get("uuid")
        if isinstance(value, str) and value:
            return value
    return None


def message_from_payload(payload: dict[str, Any], room_wide: bool = False) -> RemoteMessage:
    """Map a Nomi chat message; anything not sent by the user counts as a character's.

    Room histories carry every member's messages, so the speaking character is
    kept when the payload names it.
    """

    sent = payload.get("sent")
    origin = MessageOrigin.USER if sent == "user" else MessageOrigin.CHARACTER
    return RemoteMessage(
        id=payload.get("uuid"),
        text=str(payload.get("text") or ""),
        origin=origin,
        sent_at=_parse_timestamp(payload.get("sentAt") or payload.get("sent_at")),
        sender_id=_sender_id(payload) if origin is MessageOrigin.CHARACTER else None,
        room_wide=room_wide,
    )
