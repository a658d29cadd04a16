"""Bounded automatic rejoin after the store connection comes back."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from huddle.monitoring.metrics import reconnect_attempts_total
from huddle.presence.store import StoreError

from . import constants
from .collaborators import NoticeKind, Notifier
from .errors import ReconnectExhausted, RoomError, RoomNotFound
from .registrar import MembershipRegistrar, is_terminal
from .session import ConnectionState, MemberHandle, RoomStateMachine
from .timers import Timer

logger = logging.getLogger(__name__)

RejoinCallback = Callable[[], Awaitable[None]]
ForceLeaveCallback = Callable[[str, RoomError | None], Awaitable[None]]


class ReconnectionController:
    """Turns connectivity transitions into rejoin attempts.

    ``was_connected`` is tri-state: ``None`` before the first report, so the
    initial "connected" is never mistaken for a recovery. Attempts are
    spaced by a fixed backoff and capped; running out forces a leave.
    """

    def __init__(
        self,
        machine: RoomStateMachine,
        registrar: MembershipRegistrar,
        notifier: Notifier,
        *,
        rejoin: RejoinCallback,
        force_leave: ForceLeaveCallback,
        max_attempts: int = 3,
        backoff: float = 3.0,
    ) -> None:
        self._machine = machine
        self._registrar = registrar
        self._notifier = notifier
        self._rejoin = rejoin
        self._force_leave = force_leave
        self._max_attempts = max_attempts
        self._retry = Timer(backoff, self.reconnect, name="reconnect-backoff")
        self._was_connected: bool | None = None
        self._reconnecting = False
        self._stale: MemberHandle | None = None

    @property
    def was_connected(self) -> bool | None:
        return self._was_connected

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnecting

    @property
    def retry_pending(self) -> bool:
        return self._retry.active

    @property
    def stale_handle(self) -> MemberHandle | None:
        return self._stale

    def cancel(self) -> None:
        self._retry.cancel()

    async def discard_pending(self) -> None:
        """Best-effort removal of a member record no attempt managed to discard."""

        stale, self._stale = self._stale, None
        if stale is not None:
            await self._registrar.discard_stale(stale)

    async def on_connectivity(self, connected: bool) -> None:
        previous, self._was_connected = self._was_connected, connected
        self._notifier.emit("connection", {"connected": connected})
        if self._machine.intentional_leave:
            return
        if not connected:
            if self._machine.is_joined:
                logger.warning("Store connection lost while in a room", extra={"room": self._machine.room_id})
                self._notifier.notify(NoticeKind.WARNING, constants.MSG_CONNECTION_LOST)
            return
        if previous is False and self._machine.is_joined:
            logger.info("Store connection restored; rejoining", extra={"room": self._machine.room_id})
            await self.reconnect()

    async def reconnect(self) -> None:
        if self._reconnecting:
            return
        machine = self._machine
        if machine.intentional_leave or machine.state not in (
            ConnectionState.JOINED,
            ConnectionState.RECONNECTING,
        ):
            return
        self._reconnecting = True
        try:
            with machine.guard() as acquired:
                if not acquired:
                    logger.debug("Join lock busy; skipping reconnect attempt")
                    return
                await self._attempt()
        finally:
            self._reconnecting = False

    async def _attempt(self) -> None:
        machine = self._machine
        room_id = machine.room_id
        stale = machine.begin_reconnect()
        if stale is not None:
            self._stale = stale
        attempt = machine.reconnect_attempts
        self._notifier.notify(
            NoticeKind.INFO,
            constants.MSG_RECONNECTING.format(attempt=attempt, limit=self._max_attempts),
        )
        logger.info("Reconnect attempt", extra={"room": room_id, "attempt": attempt})
        try:
            if room_id is None or not await self._registrar.room_exists(room_id):
                reconnect_attempts_total.labels("room_missing").inc()
                self._notifier.notify(NoticeKind.ERROR, constants.MSG_ROOM_DELETED)
                await self._force_leave(constants.MSG_ROOM_DELETED, RoomNotFound(room_id=room_id))
                return
            if self._stale is not None and await self._registrar.discard_stale(self._stale):
                self._stale = None
            await self._rejoin()
        except (StoreError, RoomError) as exc:
            reconnect_attempts_total.labels("failed").inc()
            if machine.intentional_leave or machine.state is not ConnectionState.RECONNECTING:
                return
            if is_terminal(exc):
                logger.warning("Reconnect hit a terminal error", extra={"room": room_id, "error": str(exc)})
                if isinstance(exc, RoomError):
                    await self._give_up(exc, exc.notice)
                else:
                    await self._give_up(None, constants.MSG_RECONNECT_EXHAUSTED)
                return
            if attempt >= self._max_attempts:
                await self._give_up(ReconnectExhausted(room_id=room_id), constants.MSG_RECONNECT_EXHAUSTED)
                return
            logger.info("Reconnect attempt failed; retrying", extra={"room": room_id, "attempt": attempt})
            self._retry.arm()
            return

        if machine.state is ConnectionState.JOINED:
            await self.discard_pending()
            reconnect_attempts_total.labels("success").inc()
            self._notifier.notify(NoticeKind.SUCCESS, constants.MSG_CONNECTION_RESTORED)

    async def _give_up(self, error: RoomError | None, message: str) -> None:
        self._retry.cancel()
        self._notifier.notify(NoticeKind.ERROR, message)
        await self._force_leave(message, error)
