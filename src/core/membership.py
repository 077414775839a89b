"""Room membership management (core domain).

The remote API cannot remove a single member, so removal recreates the room
under a new id. Everything that holds the old id (the tracked room, stored
poll selections) is rebound here so later polls and sends do not hit a
vanished room.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, Optional

from core.config import RoomConfig
from core.errors import NotFound, RoomLostError
from core.models import MemberRemoval, PollSelection, Room
from core.ports import ChatClientPort, SelectionStorePort

LOGGER = logging.getLogger(__name__)


class RoomMembershipManager:
    """Maps characters onto the logical room and propagates room id changes."""

    def __init__(
        self,
        chat: ChatClientPort,
        selections: SelectionStorePort,
        room_config: RoomConfig,
        room: Optional[Room] = None,
    ) -> None:
        self._chat = chat
        self._selections = selections
        self._room_config = room_config
        self._room = room

    @property
    def room(self) -> Optional[Room]:
        """The most recent snapshot of the tracked room, if any."""

        return self._room

    async def ensure_room(
        self, name: Optional[str] = None, initial_members: Iterable[str] = ()
    ) -> Room:
        """Find the logical room by name, creating it when it does not exist."""

        name = name or self._room_config.name
        for room in await self._chat.list_rooms():
            if room.name == name:
                self._room = room
                return room

        room = await self._chat.create_room(
            name, list(initial_members), self._room_config.backchanneling_enabled
        )
        LOGGER.info("Room %s created with id %s", name, room.id)
        self._room = room
        return room

    async def add(self, room_id: str, character_id: str) -> Room:
        """Add a character; the room keeps its id."""

        _, room = await self._with_refresh(
            room_id, lambda target: self._chat.add_member(target, character_id)
        )
        self._room = room
        LOGGER.info("Character %s added to room %s", character_id, room.id)
        return room

    async def remove(self, room_id: str, character_id: str) -> MemberRemoval:
        """Remove a character; the result holds the recreated room (new id).

        ``previous_room_id`` is the id actually deleted, which differs from
        ``room_id`` when a stale id was refreshed by name first. Stored
        selections pointing at it are moved to the new room and the removed
        character's own selection for that room is dropped.
        """

        try:
            used_id, room = await self._with_refresh(
                room_id, lambda target: self._chat.remove_member(target, character_id)
            )
        except RoomLostError as exc:
            LOGGER.error(
                "Room %s lost during member removal; selections still reference it", exc.room.id
            )
            if self._room is not None and self._room.id == exc.room.id:
                self._room = None
            raise

        if room.id != used_id:
            self._selections.remove_selection(character_id, used_id)
            rebound = self._selections.rebind_room(used_id, room)
            LOGGER.info(
                "Room %s recreated as %s after removing %s (%s selections rebound)",
                used_id,
                room.id,
                character_id,
                rebound,
            )
        self._room = room
        return MemberRemoval(room=room, previous_room_id=used_id)

    async def refresh_selection(self, selection: PollSelection) -> Optional[PollSelection]:
        """Rebind a selection whose room vanished to the room now under its name.

        Returns the updated selection, or None when the room still exists or
        no room carries the name any more.
        """

        if not selection.room_id:
            return None
        name = selection.room_name
        if not name and self._room is not None and self._room.id == selection.room_id:
            name = self._room.name

        rooms = await self._chat.list_rooms()
        if any(room.id == selection.room_id for room in rooms) or not name:
            return None
        for room in rooms:
            if room.name == name:
                rebound = self._selections.rebind_room(selection.room_id, room)
                LOGGER.warning(
                    "Room %s is gone; %s selections moved to %s (%s)",
                    selection.room_id,
                    rebound,
                    room.id,
                    room.name,
                )
                if self._room is not None and self._room.id == selection.room_id:
                    self._room = room
                return PollSelection(
                    character_id=selection.character_id,
                    room_id=room.id,
                    character_name=selection.character_name,
                    room_name=room.name,
                )
        LOGGER.warning("Room %s (%s) no longer exists", selection.room_id, name)
        return None

    async def _with_refresh(
        self, room_id: str, operation: Callable[[str], Awaitable[Room]]
    ) -> tuple[str, Room]:
        # A stale id is retried once with the id found under the same room name.
        try:
            return room_id, await operation(room_id)
        except NotFound:
            refreshed_id = await self._refresh_room_id(room_id)
            if refreshed_id is None or refreshed_id == room_id:
                raise
            LOGGER.warning("Room %s not found; retrying with %s", room_id, refreshed_id)
            return refreshed_id, await operation(refreshed_id)

    async def _refresh_room_id(self, stale_id: str) -> Optional[str]:
        name = None
        if self._room is not None and self._room.id == stale_id:
            name = self._room.name
        else:
            for selection in self._selections.list_selections():
                if selection.room_id == stale_id and selection.room_name:
                    name = selection.room_name
                    break
        if not name:
            return None

        for room in await self._chat.list_rooms():
            if room.name == name:
                if self._room is not None and self._room.id == stale_id:
                    self._room = room
                if room.id != stale_id:
                    self._selections.rebind_room(stale_id, room)
                return room.id
        return None
