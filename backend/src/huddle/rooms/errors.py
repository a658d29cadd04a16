"""Error taxonomy for room membership operations."""

from __future__ import annotations

from huddle.presence.store import StoreError, StoreErrorKind


class RoomError(RuntimeError):
    """Base class for failures surfaced to the caller and the UI."""

    code = "room_error"
    user_message = "Room operation failed"

    def __init__(self, message: str | None = None, *, room_id: str | None = None) -> None:
        super().__init__(message or self.user_message)
        self.room_id = room_id

    @property
    def notice(self) -> str:
        return str(self)


class RoomJoinFailed(RoomError):
    code = "room_join_failed"
    user_message = "Could not join the room"

    @property
    def retryable(self) -> bool:
        cause = self.__cause__
        return isinstance(cause, StoreError) and cause.kind is StoreErrorKind.NETWORK


class RoomFull(RoomError):
    code = "room_full"
    user_message = "The room is full"


class RoomNotFound(RoomError):
    code = "room_not_found"
    user_message = "Room not found"


class MembershipConflict(RoomError):
    """A stale member record of this client was found in the room."""

    code = "membership_conflict"
    user_message = "A previous session was still registered in the room"


class ReconnectExhausted(RoomError):
    code = "reconnect_exhausted"
    user_message = "Could not restore connection"


class AlreadyInRoom(RoomError):
    code = "already_in_room"
    user_message = "Leave the current room first"


class NotRoomCreator(RoomError):
    code = "not_room_creator"
    user_message = "Only the room creator can delete it"


class InvalidRoomId(RoomError):
    code = "invalid_room_id"
    user_message = "Invalid room id"


class MessageRejected(RoomError):
    code = "message_rejected"
    user_message = "Message was not sent"


class InvalidTransition(RuntimeError):
    """A state machine transition that the protocol does not allow."""


__all__ = [
    "AlreadyInRoom",
    "InvalidRoomId",
    "InvalidTransition",
    "MembershipConflict",
    "MessageRejected",
    "NotRoomCreator",
    "ReconnectExhausted",
    "RoomError",
    "RoomFull",
    "RoomJoinFailed",
    "RoomNotFound",
    "StoreError",
    "StoreErrorKind",
]
