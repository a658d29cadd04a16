"""Protocol timings, limits and user-facing notice texts."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class RoomTimings:
    """Delays (seconds) driving the membership protocol."""

    reconnect_backoff: float = 3.0
    reconnect_max_attempts: int = 3
    members_debounce: float = 0.3
    directory_cache_ttl: float = 5.0
    directory_refresh_debounce: float = 1.0
    intentional_leave_cooldown: float = 10.0


@dataclass(slots=True, frozen=True)
class RoomLimits:
    max_members: int = 8
    room_id_length: int = 8
    room_id_attempts: int = 100
    room_name_max_length: int = 50
    nickname_max_length: int = 32
    chat_max_messages: int = 200
    chat_max_length: int = 200
    chat_rate_limit: float = 1.0


ROOM_ID_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
ROOM_ID_MAX_LENGTH = 50

MSG_LEFT_ROOM = "You left the room"
MSG_KICKED = "You were removed by the administrator"
MSG_ROOM_DELETED = "Room was deleted"
MSG_RECONNECT_EXHAUSTED = "Could not restore connection"
MSG_CONNECTION_LOST = "Connection lost, reconnecting..."
MSG_CONNECTION_RESTORED = "Connection restored"
MSG_RECONNECTING = "Reconnecting... (attempt {attempt}/{limit})"
MSG_JOIN_FAILED = "Could not join the room"
MSG_ROOM_CREATED = "Room created"
MSG_LEAVE_CURRENT_FIRST = "Leave the current room first"
