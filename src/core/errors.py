"""Error taxonomy shared by the core and adapters.

The HTTP layer maps these onto status codes; the poll pass catches them per
character so one failing character never aborts the batch.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence


class BridgeError(Exception):
    """Base class for every error the bridge raises on purpose."""


class ConfigurationError(BridgeError):
    """A required credential or setting is missing."""


class BadRequest(BridgeError):
    """An action payload is missing a required field or is otherwise invalid."""


class UnknownAction(BadRequest):
    def __init__(self, action: Any) -> None:
        super().__init__(f"unknown action: {action!r}")
        self.action = action


class LastMemberError(BadRequest):
    def __init__(self, room_id: str, character_id: str) -> None:
        super().__init__(f"cannot remove last member {character_id} from room {room_id}")
        self.room_id = room_id
        self.character_id = character_id


class UpstreamError(BridgeError):
    """Non-success response (or transport failure) from the chat or LLM API.

    ``attempts`` keeps one ``(status_code, body)`` pair per endpoint tried, so a
    combined failure (primary + fallback) still exposes both status codes.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: str = "",
        attempts: Sequence[tuple[Optional[int], str]] = (),
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.attempts = list(attempts) or [(status_code, body)]

    @property
    def status_codes(self) -> list[Optional[int]]:
        return [status for status, _ in self.attempts]


class NotFound(UpstreamError):
    """The referenced room or character no longer exists remotely."""


class TransientBusy(UpstreamError):
    """The character is not ready to reply yet; retried on the next tick."""


class RoomLostError(BridgeError):
    """A room was deleted but could not be recreated.

    Raised by the remove-member workaround when the create step fails after the
    delete step succeeded. The room no longer exists remotely and must be
    rebuilt by hand from ``room``.
    """

    def __init__(self, room, cause: Exception) -> None:
        super().__init__(
            f"room {room.id} ({room.name}) was deleted but could not be recreated: {cause}"
        )
        self.room = room
        self.cause = cause
