"""The per-client room connection state machine."""

from __future__ import annotations

import contextlib
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Iterator

from .errors import InvalidTransition
from .timers import Timer

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    JOINING = "joining"
    JOINED = "joined"
    LEAVING = "leaving"
    RECONNECTING = "reconnecting"


_ALLOWED: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.IDLE: frozenset({ConnectionState.JOINING}),
    ConnectionState.JOINING: frozenset({ConnectionState.JOINED, ConnectionState.IDLE}),
    ConnectionState.JOINED: frozenset({ConnectionState.LEAVING, ConnectionState.RECONNECTING}),
    ConnectionState.RECONNECTING: frozenset(
        {ConnectionState.JOINED, ConnectionState.LEAVING, ConnectionState.RECONNECTING}
    ),
    ConnectionState.LEAVING: frozenset({ConnectionState.IDLE}),
}


@dataclass(slots=True, frozen=True)
class MemberHandle:
    """Reference to the member record this client owns."""

    room_id: str
    member_id: str
    path: str


@dataclass(slots=True, frozen=True)
class LeaveTicket:
    """What a leave still has to tear down after the state flipped."""

    room_id: str | None
    handle: MemberHandle | None
    previous: ConnectionState


@dataclass(slots=True, frozen=True)
class SessionSnapshot:
    state: ConnectionState
    room_id: str | None
    member_id: str | None
    is_intentional_leave: bool
    reconnect_attempts: int
    join_locked: bool

    def as_dict(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "room_id": self.room_id,
            "member_id": self.member_id,
            "is_intentional_leave": self.is_intentional_leave,
            "reconnect_attempts": self.reconnect_attempts,
            "join_locked": self.join_locked,
        }


StateListener = Callable[[ConnectionState, ConnectionState], None]


class RoomStateMachine:
    """Single owner of the connection session.

    Every change to the session goes through one of the transition methods
    below; each validates the move against the transition table and keeps
    ``member_id`` set exactly while the state is ``JOINED``.
    """

    def __init__(self, *, intentional_leave_cooldown: float = 10.0) -> None:
        self._state = ConnectionState.IDLE
        self._room_id: str | None = None
        self._handle: MemberHandle | None = None
        self._intentional_leave = False
        self._reconnect_attempts = 0
        self._join_locked = False
        self._listeners: list[StateListener] = []
        self._cooldown = Timer(
            intentional_leave_cooldown, self._end_cooldown, name="intentional-leave-cooldown"
        )

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def room_id(self) -> str | None:
        return self._room_id

    @property
    def handle(self) -> MemberHandle | None:
        return self._handle

    @property
    def member_id(self) -> str | None:
        return self._handle.member_id if self._handle is not None else None

    @property
    def is_joined(self) -> bool:
        return self._state is ConnectionState.JOINED

    @property
    def intentional_leave(self) -> bool:
        return self._intentional_leave

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def join_locked(self) -> bool:
        return self._join_locked

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            room_id=self._room_id,
            member_id=self.member_id,
            is_intentional_leave=self._intentional_leave,
            reconnect_attempts=self._reconnect_attempts,
            join_locked=self._join_locked,
        )

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Join lock
    # ------------------------------------------------------------------
    @contextlib.contextmanager
    def guard(self, *, force: bool = False) -> Iterator[bool]:
        """Hold the join lock for the duration of the block.

        Yields ``False`` when another join/leave already holds the lock; the
        caller must then do nothing. With ``force`` the block always runs and
        only a lock taken here is released.
        """

        acquired = not self._join_locked
        if not acquired and not force:
            yield False
            return
        self._join_locked = True
        try:
            yield True
        finally:
            if acquired:
                self._join_locked = False

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def begin_join(self, room_id: str) -> None:
        self._transition(ConnectionState.JOINING)
        self._room_id = room_id

    def complete_join(self, handle: MemberHandle) -> None:
        if handle.room_id != self._room_id:
            raise InvalidTransition(f"Joined {handle.room_id!r} while joining {self._room_id!r}")
        self._cooldown.cancel()
        self._intentional_leave = False
        self._reconnect_attempts = 0
        self._handle = handle
        self._transition(ConnectionState.JOINED)

    def fail_join(self) -> None:
        self._room_id = None
        self._transition(ConnectionState.IDLE)

    def begin_leave(self) -> LeaveTicket:
        """Start leaving; everything that suppresses reactions happens here, synchronously."""

        self._check(ConnectionState.LEAVING)
        previous = self._state
        ticket = LeaveTicket(room_id=self._room_id, handle=self._handle, previous=previous)
        self._intentional_leave = True
        self._room_id = None
        self._handle = None
        self._transition(ConnectionState.LEAVING)
        return ticket

    def complete_leave(self) -> None:
        self._reconnect_attempts = 0
        self._transition(ConnectionState.IDLE)
        self._cooldown.arm()

    def mark_intentional_leave(self) -> None:
        self._cooldown.cancel()
        self._intentional_leave = True

    def begin_reconnect(self) -> MemberHandle | None:
        """Enter (or stay in) ``RECONNECTING``; returns the stale handle on the first attempt."""

        stale = self._handle
        self._transition(ConnectionState.RECONNECTING)
        self._handle = None
        self._reconnect_attempts += 1
        return stale

    def complete_reconnect(self, handle: MemberHandle) -> None:
        if handle.room_id != self._room_id:
            raise InvalidTransition(f"Rejoined {handle.room_id!r} while reconnecting to {self._room_id!r}")
        self._reconnect_attempts = 0
        self._handle = handle
        self._transition(ConnectionState.JOINED)

    def reset(self) -> None:
        """Drop back to a pristine session (process shutdown)."""

        self._cooldown.cancel()
        old = self._state
        self._state = ConnectionState.IDLE
        self._room_id = None
        self._handle = None
        self._intentional_leave = False
        self._reconnect_attempts = 0
        self._notify(old, self._state)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _check(self, target: ConnectionState) -> None:
        if target not in _ALLOWED[self._state]:
            raise InvalidTransition(f"Cannot move from {self._state.value} to {target.value}")

    def _transition(self, target: ConnectionState) -> None:
        current = self._state
        self._check(target)
        self._state = target
        if target is not ConnectionState.JOINED:
            self._handle = None
        logger.debug(
            "Room session transition",
            extra={"from_state": current.value, "to_state": target.value, "room": self._room_id},
        )
        self._notify(current, target)

    def _notify(self, old: ConnectionState, new: ConnectionState) -> None:
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("Room state listener failed")

    def _end_cooldown(self) -> None:
        if self._state is ConnectionState.IDLE:
            self._intentional_leave = False
