"""Action dispatch for inbound bridge requests.

Each request names exactly one ``action``; the dispatcher looks it up in a
table and hands the payload to that handler. There is no default action: an
unknown or missing discriminator is rejected. Handlers validate their required
fields before any upstream call is made.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

from core.config import RoomConfig
from core.errors import BadRequest, UnknownAction
from core.membership import RoomMembershipManager
from core.models import PollSelection
from core.orchestrator import PollOrchestrator
from core.ports import AnswerEnginePort, ChatClientPort, MessageStorePort, SelectionStorePort

LOGGER = logging.getLogger(__name__)

Handler = Callable[[Mapping[str, Any]], Awaitable[dict[str, Any]]]


class Action(str, Enum):
    LIST_NOMIS = "list-nomis"
    LIST_ROOMS = "list-rooms"
    CREATE_ROOM = "create-room"
    ENSURE_ROOM = "ensure-room"
    ADD_NOMI_TO_ROOM = "add-nomi-to-room"
    REMOVE_NOMI_FROM_ROOM = "remove-nomi-from-room"
    GET_ROOM_MESSAGES = "get-room-messages"
    REQUEST_CHAT = "request-chat"
    SEND_MESSAGE = "send-message"
    ASK_AI = "ask-ai"
    PROCESS_MESSAGE = "process-message"
    LIST_MESSAGES = "list-messages"
    SELECT_NOMI = "select-nomi"
    UNSELECT_NOMI = "unselect-nomi"
    LIST_SELECTIONS = "list-selections"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require(payload: Mapping[str, Any], *fields: str) -> tuple[Any, ...]:
    missing = [name for name in fields if payload.get(name) in (None, "")]
    if missing:
        verb = "is" if len(missing) == 1 else "are"
        raise BadRequest(f"{', '.join(missing)} {verb} required")
    return tuple(payload[name] for name in fields)


def _optional_str(payload: Mapping[str, Any], name: str) -> Optional[str]:
    value = payload.get(name)
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise BadRequest(f"{name} must be a string")
    return value


class ActionDispatcher:
    """Routes a named action to its handler."""

    def __init__(
        self,
        chat: ChatClientPort,
        engine: AnswerEnginePort,
        orchestrator: PollOrchestrator,
        membership: RoomMembershipManager,
        store: MessageStorePort,
        selections: SelectionStorePort,
        room_config: RoomConfig,
    ) -> None:
        self._chat = chat
        self._engine = engine
        self._orchestrator = orchestrator
        self._membership = membership
        self._store = store
        self._selections = selections
        self._room_config = room_config
        self._handlers: dict[Action, Handler] = {
            Action.LIST_NOMIS: self._list_nomis,
            Action.LIST_ROOMS: self._list_rooms,
            Action.CREATE_ROOM: self._create_room,
            Action.ENSURE_ROOM: self._ensure_room,
            Action.ADD_NOMI_TO_ROOM: self._add_nomi_to_room,
            Action.REMOVE_NOMI_FROM_ROOM: self._remove_nomi_from_room,
            Action.GET_ROOM_MESSAGES: self._get_room_messages,
            Action.REQUEST_CHAT: self._request_chat,
            Action.SEND_MESSAGE: self._send_message,
            Action.ASK_AI: self._ask_ai,
            Action.PROCESS_MESSAGE: self._process_message,
            Action.LIST_MESSAGES: self._list_messages,
            Action.SELECT_NOMI: self._select_nomi,
            Action.UNSELECT_NOMI: self._unselect_nomi,
            Action.LIST_SELECTIONS: self._list_selections,
        }

    async def dispatch(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(payload, Mapping):
            raise BadRequest("request body must be a JSON object")
        raw_action = payload.get("action")
        try:
            action = Action(raw_action)
        except ValueError:
            raise UnknownAction(raw_action) from None

        LOGGER.info("Dispatching action %s", action.value)
        return await self._handlers[action](payload)

    async def _list_nomis(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        characters = await self._chat.list_characters()
        LOGGER.info("Found %s Nomis", len(characters))
        return {"nomis": [character.to_dict() for character in characters]}

    async def _list_rooms(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        rooms = await self._chat.list_rooms()
        return {"rooms": [room.to_dict() for room in rooms]}

    async def _create_room(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        (name,) = _require(payload, "name")
        members = payload.get("nomiUuids") or []
        if not isinstance(members, list):
            raise BadRequest("nomiUuids must be a list")
        backchanneling = bool(
            payload.get("backchannelingEnabled", self._room_config.backchanneling_enabled)
        )
        room = await self._chat.create_room(str(name), members, backchanneling)
        return {"room": room.to_dict()}

    async def _ensure_room(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        room = await self._membership.ensure_room(_optional_str(payload, "name"))
        return {"room": room.to_dict()}

    async def _add_nomi_to_room(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        room_id, nomi_uuid = _require(payload, "roomId", "nomiUuid")
        room = await self._membership.add(room_id, nomi_uuid)
        return {"success": True, "room": room.to_dict()}

    async def _remove_nomi_from_room(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        room_id, nomi_uuid = _require(payload, "roomId", "nomiUuid")
        removal = await self._membership.remove(room_id, nomi_uuid)
        return {
            "success": True,
            "room": removal.room.to_dict(),
            "previousRoomId": removal.previous_room_id,
        }

    async def _get_room_messages(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        room_id = _optional_str(payload, "roomId")
        nomi_uuid = _optional_str(payload, "nomiUuid")
        if room_id is None and nomi_uuid is None:
            raise BadRequest("roomId or nomiUuid is required")
        messages = await self._chat.fetch_messages(room_id=room_id, character_id=nomi_uuid)
        return {"messages": [message.to_dict() for message in messages]}

    async def _request_chat(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        (room_id,) = _require(payload, "roomId")
        outcome = await self._chat.request_reply(room_id, _optional_str(payload, "nomiUuid"))
        if outcome.pending:
            return {"success": False, "reason": "not_ready", "timestamp": _timestamp()}
        return {
            "success": True,
            "replyMessage": outcome.message.to_dict() if outcome.message else None,
            "timestamp": _timestamp(),
        }

    async def _send_message(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        nomi_uuid, message = _require(payload, "nomiUuid", "message")
        response = await self._chat.send_message(
            nomi_uuid, _optional_str(payload, "roomId"), str(message)
        )
        return {"success": True, "response": response, "timestamp": _timestamp()}

    async def _ask_ai(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        (question,) = _require(payload, "question")
        answer = await self._engine.answer(str(question))
        return {"answer": answer}

    async def _process_message(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        nomi_uuid, text = _require(payload, "nomiUuid", "nomiMessage")
        record = await self._orchestrator.process_message(
            nomi_uuid,
            str(text),
            character_name=_optional_str(payload, "nomiName") or "",
            room_id=_optional_str(payload, "roomId"),
        )
        if record is None:
            return {"success": True, "skipped": True, "reason": "already_processed"}
        return {"success": True, "record": record.to_dict(), "timestamp": _timestamp()}

    async def _list_messages(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        limit = payload.get("limit", 50)
        if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
            raise BadRequest("limit must be a positive integer")
        records = self._store.list_recent(limit)
        return {"messages": [record.to_dict() for record in records]}

    async def _select_nomi(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        (nomi_uuid,) = _require(payload, "nomiUuid")
        selection = PollSelection(
            character_id=nomi_uuid,
            room_id=_optional_str(payload, "roomId"),
            character_name=_optional_str(payload, "nomiName") or "",
            room_name=_optional_str(payload, "roomName") or "",
        )
        self._selections.add_selection(selection)
        return {"success": True, "selection": selection.to_dict()}

    async def _unselect_nomi(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        (nomi_uuid,) = _require(payload, "nomiUuid")
        removed = self._selections.remove_selection(nomi_uuid, _optional_str(payload, "roomId"))
        return {"success": removed}

    async def _list_selections(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return {"selections": [s.to_dict() for s in self._selections.list_selections()]}
