"""Nomi REST API adapter.

Implements the core ChatClientPort with an async httpx client. All calls carry
the account API key and a timeout; timeouts and transport failures surface as
UpstreamError like any non-success response.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

import httpx

from adapters.nomi_mapper import character_from_payload, message_from_payload, room_from_payload
from core.errors import (
    BadRequest,
    ConfigurationError,
    LastMemberError,
    NotFound,
    RoomLostError,
    TransientBusy,
    UpstreamError,
)
from core.models import Character, RemoteMessage, ReplyOutcome, Room

LOGGER = logging.getLogger(__name__)

NOMI_BASE_URL = "https://api.nomi.ai/v1"
NOT_READY_MARKER = "RoomNomiNotReadyForMessage"


def _raise_for_status(response: httpx.Response, action: str) -> None:
    if response.is_success:
        return
    status = response.status_code
    body = response.text
    if status == 404:
        raise NotFound(f"Nomi API {action}: not found", status, body)
    if status == 400 and NOT_READY_MARKER in body:
        raise TransientBusy(f"Nomi API {action}: not ready for message", status, body)
    raise UpstreamError(f"Nomi API error on {action}: {status}", status, body)


def _json(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class NomiClient:
    """ChatClientPort implementation over the Nomi REST API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = NOMI_BASE_URL,
        timeout: float = 20.0,
        room_note: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        # Fail fast on a missing key to avoid a burst of 401s mid-poll.
        if not api_key:
            raise ConfigurationError("Nomi API key is not configured")
        self._headers = {"Authorization": api_key}
        self._room_note = room_note
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _request(
        self, method: str, path: str, json: Optional[dict[str, Any]] = None
    ) -> httpx.Response:
        try:
            return await self._http.request(method, path, json=json, headers=self._headers)
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"Nomi API timed out on {method} {path}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Nomi API request failed on {method} {path}: {exc}") from exc

    async def list_characters(self) -> list[Character]:
        response = await self._request("GET", "/nomis")
        _raise_for_status(response, "list-nomis")
        nomis = _json(response).get("nomis")
        if not isinstance(nomis, list):
            raise UpstreamError(
                "Nomi API list-nomis: response has no nomis list",
                response.status_code,
                response.text,
            )
        return [character_from_payload(nomi) for nomi in nomis]

    async def list_rooms(self) -> list[Room]:
        response = await self._request("GET", "/rooms")
        _raise_for_status(response, "list-rooms")
        return [room_from_payload(room) for room in _json(response).get("rooms") or []]

    async def get_room(self, room_id: str) -> Room:
        for room in await self.list_rooms():
            if room.id == room_id:
                return room
        raise NotFound(f"Room {room_id} not found", 404)

    async def create_room(
        self, name: str, members: Iterable[str], backchanneling_enabled: bool
    ) -> Room:
        if not name or not name.strip():
            raise BadRequest("room name must not be empty")
        payload: dict[str, Any] = {
            "name": name,
            "backchannelingEnabled": bool(backchanneling_enabled),
            "nomiUuids": list(members),
        }
        if self._room_note:
            payload["note"] = self._room_note

        response = await self._request("POST", "/rooms", json=payload)
        _raise_for_status(response, "create-room")
        data = _json(response)
        if "uuid" not in data:
            raise UpstreamError(
                "Nomi API create-room: response has no room uuid",
                response.status_code,
                response.text,
            )
        return room_from_payload(data)

    async def add_member(self, room_id: str, character_id: str) -> Room:
        """Add a character by replacing the room's whole member list."""

        room = await self.get_room(room_id)
        if character_id in room.member_ids:
            return room

        member_ids = [member.id for member in room.members] + [character_id]
        response = await self._request(
            "PUT",
            f"/rooms/{room_id}",
            json={
                "name": room.name,
                "backchannelingEnabled": room.backchanneling_enabled,
                "nomiUuids": member_ids,
            },
        )
        _raise_for_status(response, "add-nomi-to-room")
        data = _json(response)
        if "uuid" in data:
            return room_from_payload(data)
        return await self.get_room(room_id)

    async def delete_room(self, room_id: str) -> None:
        response = await self._request("DELETE", f"/rooms/{room_id}")
        _raise_for_status(response, "delete-room")

    async def remove_member(self, room_id: str, character_id: str) -> Room:
        """Remove a character by deleting the room and recreating it without them.

        Errors before the delete leave the room untouched and can be retried.
        If the recreate fails after the delete, RoomLostError carries the old
        room snapshot for manual repair.
        """

        room = await self.get_room(room_id)
        if character_id not in room.member_ids:
            return room

        remaining = [member.id for member in room.members if member.id != character_id]
        if not remaining:
            raise LastMemberError(room_id, character_id)
        if not room.name.strip():
            raise BadRequest(f"room {room_id} has no name to recreate it under")

        await self.delete_room(room_id)
        LOGGER.warning(
            "Room %s (%s) deleted; recreating without %s", room.id, room.name, character_id
        )
        try:
            new_room = await self.create_room(room.name, remaining, room.backchanneling_enabled)
        except UpstreamError as exc:
            LOGGER.error(
                "Room %s (%s) deleted but not recreated; members were %s",
                room.id,
                room.name,
                ", ".join(remaining),
            )
            raise RoomLostError(room, exc) from exc

        LOGGER.info("Room %s recreated as %s", room.id, new_room.id)
        return new_room

    @staticmethod
    def _message_paths(
        room_id: Optional[str], character_id: Optional[str]
    ) -> list[tuple[str, bool]]:
        """Return (path, room_wide) pairs in the order they are tried."""

        paths: list[tuple[str, bool]] = []
        if room_id and character_id:
            paths.append((f"/nomis/{character_id}/rooms/{room_id}/chat", False))
        if room_id:
            paths.append((f"/rooms/{room_id}/messages", True))
            paths.append((f"/rooms/{room_id}/chat", True))
        elif character_id:
            paths.append((f"/nomis/{character_id}/chat", False))
        return paths

    async def fetch_messages(
        self, room_id: Optional[str] = None, character_id: Optional[str] = None
    ) -> list[RemoteMessage]:
        """Fetch recent messages, trying each addressing scheme in turn.

        A not-found moves on to the next scheme; when every scheme is
        not-found the history is treated as empty so polling stays live.
        """

        paths = self._message_paths(room_id, character_id)
        if not paths:
            raise BadRequest("room id or character id is required")

        for path, room_wide in paths:
            response = await self._request("GET", path)
            if response.status_code == 404:
                LOGGER.warning("Nomi API not found on %s; trying next endpoint", path)
                continue
            _raise_for_status(response, "get-messages")
            return [
                message_from_payload(item, room_wide=room_wide)
                for item in _json(response).get("messages") or []
            ]

        LOGGER.warning(
            "No message history available (room=%s, character=%s)", room_id, character_id
        )
        return []

    async def request_reply(self, room_id: str, character_id: Optional[str]) -> ReplyOutcome:
        payload = {"nomiUuid": character_id} if character_id else {}
        response = await self._request("POST", f"/rooms/{room_id}/chat/request", json=payload)
        try:
            _raise_for_status(response, "request-chat")
        except TransientBusy:
            LOGGER.info("Nomi %s not ready for message yet", character_id or room_id)
            return ReplyOutcome(pending=True)

        data = _json(response)
        reply = data.get("replyMessage")
        message = None
        if isinstance(reply, dict) and reply.get("text"):
            message = message_from_payload(reply)
        return ReplyOutcome(message=message, raw=data)

    async def send_message(
        self, character_id: str, room_id: Optional[str], text: str
    ) -> dict[str, Any]:
        """Send into the room, falling back to the character's direct chat."""

        if not text:
            raise BadRequest("message text must not be empty")

        attempts: list[tuple[Optional[int], str]] = []
        body = {"messageText": text}
        paths = [f"/rooms/{room_id}/chat"] if room_id else []
        paths.append(f"/nomis/{character_id}/chat")

        for path in paths:
            try:
                response = await self._request("POST", path, json=body)
            except UpstreamError as exc:
                attempts.append((None, str(exc)))
                continue
            if response.is_success:
                if attempts:
                    LOGGER.info("Message sent to %s via direct chat fallback", character_id)
                return _json(response)
            LOGGER.warning("Send via %s not OK: %s", path, response.status_code)
            attempts.append((response.status_code, response.text))

        statuses = ", ".join(str(status) for status, _ in attempts)
        last_status, last_body = attempts[-1]
        raise UpstreamError(
            f"Nomi API send-message failed ({statuses})",
            last_status,
            last_body,
            attempts=attempts,
        )
