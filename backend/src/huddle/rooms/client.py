"""Entry point for room intents coming from the UI."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from huddle.monitoring.metrics import room_joins_total, room_leaves_total
from huddle.presence.store import PresenceStore, StoreError

from . import constants
from .chat import ChatLog, OutgoingMessagePolicy
from .collaborators import (
    AudioLevelMonitor,
    BestEffortSink,
    LoggingNotifier,
    NoticeKind,
    Notifier,
    NullAudioLevelMonitor,
    NullPeerSession,
    PeerSession,
    SoundKind,
)
from .constants import RoomLimits, RoomTimings
from .directory import RoomsDirectory, RoomsDirectoryCache
from .dispatcher import MembershipChangeDispatcher
from .errors import (
    AlreadyInRoom,
    InvalidRoomId,
    MessageRejected,
    NotRoomCreator,
    RoomError,
    RoomJoinFailed,
    RoomNotFound,
)
from .journal import SessionJournal
from .models import ChatMessage, RoomSummary, now_ms
from .reconnect import ReconnectionController
from .registrar import JoinResult, MembershipRegistrar
from .session import ConnectionState, MemberHandle, RoomStateMachine, SessionSnapshot

logger = logging.getLogger(__name__)

_ROOM_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{1,%d}$" % constants.ROOM_ID_MAX_LENGTH)


@dataclass(slots=True)
class Identity:
    """Who this client presents itself as inside rooms."""

    nickname: str
    account_id: str | None = None
    muted: bool = False
    speaker_muted: bool = False


def validate_room_id(room_id: str) -> str:
    room_id = (room_id or "").strip()
    if not _ROOM_ID_RE.match(room_id):
        raise InvalidRoomId(room_id=room_id)
    return room_id


class RoomClient:
    """Wires the state machine, registrar, dispatcher and reconnection.

    Construction performs no I/O. Call :meth:`start` once the store is
    started; it attaches the connectivity listener and the rooms directory
    in that order.
    """

    def __init__(
        self,
        store: PresenceStore,
        *,
        identity: Identity,
        peers: PeerSession | None = None,
        notifier: Notifier | None = None,
        audio_levels: AudioLevelMonitor | None = None,
        sink: BestEffortSink | None = None,
        journal: SessionJournal | None = None,
        timings: RoomTimings | None = None,
        limits: RoomLimits | None = None,
    ) -> None:
        self._store = store
        self.identity = identity
        self._peers = peers or NullPeerSession()
        self._notifier = notifier or LoggingNotifier()
        self._audio_levels = audio_levels or NullAudioLevelMonitor()
        self._sink = sink or BestEffortSink()
        self._journal = journal or SessionJournal(None)
        self._timings = timings or RoomTimings()
        self._limits = limits or RoomLimits()

        self.machine = RoomStateMachine(
            intentional_leave_cooldown=self._timings.intentional_leave_cooldown
        )
        self.machine.add_listener(self._on_state_change)
        self.registrar = MembershipRegistrar(store, limits=self._limits)
        self.chat_log = ChatLog(self._limits.chat_max_messages)
        self._message_policy = OutgoingMessagePolicy(
            max_length=self._limits.chat_max_length, rate_limit=self._limits.chat_rate_limit
        )
        self.dispatcher = MembershipChangeDispatcher(
            store,
            self.machine,
            peers=self._peers,
            notifier=self._notifier,
            audio_levels=self._audio_levels,
            chat_log=self.chat_log,
            on_kicked=self._on_kicked,
            debounce=self._timings.members_debounce,
        )
        self.reconnector = ReconnectionController(
            self.machine,
            self.registrar,
            self._notifier,
            rejoin=self._rejoin,
            force_leave=self._leave_after_failure,
            max_attempts=self._timings.reconnect_max_attempts,
            backoff=self._timings.reconnect_backoff,
        )
        self.directory = RoomsDirectory(
            store,
            RoomsDirectoryCache(self._timings.directory_cache_ttl),
            account_id=identity.account_id,
            on_update=self._on_directory_update,
            refresh_debounce=self._timings.directory_refresh_debounce,
        )
        self._remove_connectivity_listener = None
        self._last_member_id: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        self._remove_connectivity_listener = self._store.add_connectivity_listener(
            self.reconnector.on_connectivity
        )
        if self._store.connected:
            await self.reconnector.on_connectivity(True)
        await self.directory.start()

    async def stop(self) -> None:
        if self.machine.state in (ConnectionState.JOINED, ConnectionState.RECONNECTING):
            await self._force_leave(None, notify=False, reason="shutdown")
        self.reconnector.cancel()
        await self.directory.stop()
        if self._remove_connectivity_listener is not None:
            self._remove_connectivity_listener()
            self._remove_connectivity_listener = None
        self.machine.reset()

    @property
    def session(self) -> SessionSnapshot:
        return self.machine.snapshot()

    @property
    def members(self) -> dict[str, Any]:
        return {key: member.model_dump(by_alias=True) for key, member in self.dispatcher.members.items()}

    # ------------------------------------------------------------------
    # Joining
    # ------------------------------------------------------------------
    async def join_room(self, room_id: str) -> MemberHandle | None:
        """Join *room_id*; returns ``None`` when another join/leave is in progress."""

        room_id = validate_room_id(room_id)
        machine = self.machine
        with machine.guard() as acquired:
            if not acquired:
                room_joins_total.labels("busy").inc()
                logger.debug("Join ignored; another join or leave is running", extra={"room": room_id})
                return None
            if machine.state is ConnectionState.JOINED and machine.room_id == room_id:
                room_joins_total.labels("noop").inc()
                return machine.handle
            if machine.state is not ConnectionState.IDLE:
                room_joins_total.labels("rejected").inc()
                raise AlreadyInRoom(room_id=machine.room_id)

            machine.begin_join(room_id)
            try:
                if not await self.registrar.room_exists(room_id):
                    raise RoomNotFound(room_id=room_id)
                result = await self.registrar.join(
                    room_id,
                    nickname=self.identity.nickname,
                    muted=self.identity.muted,
                    speaker_muted=self.identity.speaker_muted,
                    account_id=self.identity.account_id,
                    previous_member_id=self._previous_member_id(room_id),
                )
            except (RoomError, StoreError) as exc:
                machine.fail_join()
                error = exc if isinstance(exc, RoomError) else RoomJoinFailed(room_id=room_id)
                room_joins_total.labels(error.code).inc()
                self._notifier.notify(NoticeKind.ERROR, error.notice)
                logger.warning("Join failed", extra={"room": room_id, "code": error.code})
                if error is exc:
                    raise
                raise error from exc

            machine.complete_join(result.handle)
            if result.member_count == 1:
                await self._clear_room_chat(room_id)
            try:
                await self._attach(result)
            except StoreError as exc:
                logger.warning("Room listeners could not be attached", extra={"room": room_id})
                await self._force_leave(None, notify=False, reason="error")
                self._notifier.notify(NoticeKind.ERROR, constants.MSG_JOIN_FAILED)
                raise RoomJoinFailed(room_id=room_id) from exc

        room_joins_total.labels("joined").inc()
        self._notifier.sound(SoundKind.JOIN)
        await self._sink.record("ENTER", room_id=room_id, member_id=result.handle.member_id)
        self.directory.schedule_refresh()
        return result.handle

    async def create_room(self, name: str, *, room_id: str | None = None) -> RoomSummary:
        name = (name or "").strip()
        if not name:
            raise RoomError("Room name is required")
        name = name[: self._limits.room_name_max_length]
        if self.machine.state is not ConnectionState.IDLE:
            self._notifier.notify(NoticeKind.WARNING, constants.MSG_LEAVE_CURRENT_FIRST)
            raise AlreadyInRoom(room_id=self.machine.room_id)

        if room_id is None:
            room_id = await self.registrar.generate_room_id()
        else:
            room_id = validate_room_id(room_id)
        record = await self.registrar.create_room(room_id, name, self.identity.account_id)
        await self._sink.record("CREATE", room_id=room_id, name=name)
        self._notifier.notify(NoticeKind.SUCCESS, constants.MSG_ROOM_CREATED)

        await self.join_room(room_id)
        return RoomSummary(
            id=room_id,
            name=record.name,
            creator_id=record.creator_id,
            member_count=1,
            is_creator=True,
            created_at=record.created_at,
        )

    async def _attach(self, result: JoinResult) -> None:
        handle = result.handle
        self._last_member_id = handle.member_id
        self._journal.save(handle.room_id, handle.member_id)
        await self.dispatcher.start(handle.room_id, handle.member_id, member_count=result.member_count)
        self.dispatcher.connect_peers(sorted(result.others))

    def _previous_member_id(self, room_id: str) -> str | None:
        return self._journal.previous_member_id(room_id) or self._last_member_id

    async def _clear_room_chat(self, room_id: str) -> None:
        self.chat_log.clear()
        await self.registrar.clear_messages(room_id)
        self._notifier.emit("chat_cleared", {"room_id": room_id})

    async def _rejoin(self) -> None:
        room_id = self.machine.room_id
        if room_id is None:
            return
        result = await self.registrar.join(
            room_id,
            nickname=self.identity.nickname,
            muted=self.identity.muted,
            speaker_muted=self.identity.speaker_muted,
            account_id=self.identity.account_id,
        )
        if self.machine.intentional_leave or self.machine.state is not ConnectionState.RECONNECTING:
            await self.registrar.leave(result.handle)
            return
        self.dispatcher.reset_peers()
        self.machine.complete_reconnect(result.handle)
        await self._attach(result)

    # ------------------------------------------------------------------
    # Leaving
    # ------------------------------------------------------------------
    async def leave_room(self) -> bool:
        """Leave on user request; returns ``False`` when there was nothing to do."""

        if self.machine.state not in (ConnectionState.JOINED, ConnectionState.RECONNECTING):
            return False
        with self.machine.guard() as acquired:
            if not acquired:
                return False
            return await self._force_leave(constants.MSG_LEFT_ROOM, notify=True, reason="user")

    async def delete_room(self, room_id: str, *, confirmed: bool = False) -> bool:
        room_id = validate_room_id(room_id)
        record = await self.registrar.room_info(room_id)
        if record is None:
            raise RoomNotFound(room_id=room_id)
        if not record.is_created_by(self.identity.account_id):
            raise NotRoomCreator(room_id=room_id)
        if not confirmed and not await self._notifier.confirm("Delete this room?"):
            return False
        if self.machine.room_id == room_id:
            await self.leave_room()
        await self.registrar.delete_room(room_id, self.identity.account_id)
        self.directory.cache.update_room(room_id, None)
        await self._sink.record("DELETE", room_id=room_id)
        self.directory.schedule_refresh()
        return True

    async def _on_kicked(self, room_deleted: bool) -> None:
        if room_deleted:
            await self._force_leave(constants.MSG_ROOM_DELETED, notify=True, reason="room_deleted")
        else:
            await self._force_leave(constants.MSG_KICKED, notify=True, reason="kicked")

    async def _leave_after_failure(self, message: str, error: RoomError | None) -> None:
        reason = error.code if error is not None else "error"
        await self._force_leave(message, notify=False, reason=reason)

    async def _force_leave(self, message: str | None, *, notify: bool, reason: str) -> bool:
        machine = self.machine
        with machine.guard(force=True):
            if machine.state not in (ConnectionState.JOINED, ConnectionState.RECONNECTING):
                return False
            ticket = machine.begin_leave()
            self.reconnector.cancel()
            try:
                await self.dispatcher.stop()
                if ticket.handle is not None:
                    await self.registrar.leave(ticket.handle)
                await self.reconnector.discard_pending()
                self.dispatcher.reset_peers()
                self._audio_levels.stop()
                self._audio_levels.set_member_id(None)
                self.chat_log.clear()
            finally:
                machine.complete_leave()
                self._journal.clear()

        room_leaves_total.labels(reason).inc()
        logger.info("Left room", extra={"room": ticket.room_id, "reason": reason})
        if notify:
            self._notifier.sound(SoundKind.LEAVE)
            if message:
                self._notifier.notify(NoticeKind.INFO, message)
        await self._sink.record("LEAVE", room_id=ticket.room_id, reason=reason)
        self.directory.schedule_refresh()
        return True

    # ------------------------------------------------------------------
    # In-room actions
    # ------------------------------------------------------------------
    async def set_muted(self, muted: bool) -> None:
        self.identity.muted = muted
        await self._update_member(muted=muted)

    async def set_speaker_muted(self, speaker_muted: bool) -> None:
        self.identity.speaker_muted = speaker_muted
        await self._update_member(speaker_muted=speaker_muted)

    async def _update_member(self, **fields: Any) -> None:
        handle = self.machine.handle
        if handle is None:
            return
        try:
            await self.registrar.update_member(handle, **fields)
        except StoreError:
            logger.warning("Failed to publish member flags", exc_info=True, extra={"fields": list(fields)})

    async def send_message(self, text: str) -> str:
        handle = self.machine.handle
        if handle is None:
            raise MessageRejected("Join a room to chat")
        policy = self._message_policy
        text = policy.check(text)
        policy.sending = True
        try:
            message = ChatMessage(
                author=self.identity.nickname,
                user_id=self.identity.account_id,
                text=text,
                timestamp=now_ms(),
            )
            message_id = await self.registrar.post_message(handle.room_id, message)
            policy.mark_sent()
            return message_id
        except StoreError as exc:
            raise MessageRejected("Message could not be delivered") from exc
        finally:
            policy.sending = False

    async def send_signal(self, recipient: str, signal: Any) -> str | None:
        """Publish a negotiation payload from the media layer to another member."""

        handle = self.machine.handle
        if handle is None:
            logger.debug("Dropping outgoing signal; not in a room")
            return None
        return await self.registrar.send_signal(handle.room_id, handle.member_id, recipient, signal)

    async def list_rooms(self, *, force: bool = False) -> list[RoomSummary]:
        rooms = await self.directory.load(force=force)
        await self._sink.record("LOAD", count=len(rooms))
        return rooms

    # ------------------------------------------------------------------
    # UI plumbing
    # ------------------------------------------------------------------
    def _on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        self._notifier.emit("state", {"from": old.value, **self.machine.snapshot().as_dict()})

    def _on_directory_update(self, rooms: list[RoomSummary]) -> None:
        self._notifier.emit("rooms", {"rooms": [room.model_dump() for room in rooms]})
