"""Room membership, reconnection and change dispatch."""

from .client import Identity, RoomClient, validate_room_id
from .collaborators import (
    AudioLevelMonitor,
    BestEffortSink,
    EventSink,
    NoticeKind,
    Notifier,
    PeerSession,
    SoundKind,
)
from .constants import RoomLimits, RoomTimings
from .errors import (
    AlreadyInRoom,
    InvalidRoomId,
    InvalidTransition,
    MembershipConflict,
    MessageRejected,
    NotRoomCreator,
    ReconnectExhausted,
    RoomError,
    RoomFull,
    RoomJoinFailed,
    RoomNotFound,
)
from .journal import SessionJournal
from .models import ChatMessage, MemberRecord, RoomRecord, RoomSummary, SignalEnvelope
from .session import ConnectionState, MemberHandle, RoomStateMachine

__all__ = [
    "AlreadyInRoom",
    "AudioLevelMonitor",
    "BestEffortSink",
    "ChatMessage",
    "ConnectionState",
    "EventSink",
    "Identity",
    "InvalidRoomId",
    "InvalidTransition",
    "MemberHandle",
    "MemberRecord",
    "MembershipConflict",
    "MessageRejected",
    "NotRoomCreator",
    "NoticeKind",
    "Notifier",
    "PeerSession",
    "ReconnectExhausted",
    "RoomClient",
    "RoomError",
    "RoomFull",
    "RoomJoinFailed",
    "RoomLimits",
    "RoomNotFound",
    "RoomRecord",
    "RoomStateMachine",
    "RoomSummary",
    "RoomTimings",
    "SessionJournal",
    "SignalEnvelope",
    "SoundKind",
    "validate_room_id",
]
