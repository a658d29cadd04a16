"""Reactions to member, signal and chat changes inside the joined room."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from huddle.monitoring.metrics import kicks_detected_total, room_members, signals_consumed_total
from huddle.presence import paths
from huddle.presence.store import EventKind, PresenceStore, Snapshot, StoreError, SubscriptionHandle

from .chat import ChatLog
from .collaborators import AudioLevelMonitor, Notifier, PeerSession, SoundKind
from .models import ChatMessage, MemberRecord, SignalEnvelope, parse_members
from .session import RoomStateMachine
from .timers import Debouncer

logger = logging.getLogger(__name__)

KickHandler = Callable[[bool], Awaitable[None]]


class MembershipChangeDispatcher:
    """Listens to one room on behalf of one member id.

    Member list updates are debounced; only the settled snapshot is acted
    upon. Signals addressed to the member are handed to the peer session and
    deleted (at most once). Chat messages feed the :class:`ChatLog`.

    A dispatcher is bound to the member id it was started with. After a
    reconnect it is restarted, so late events for the old id are ignored.
    """

    def __init__(
        self,
        store: PresenceStore,
        machine: RoomStateMachine,
        *,
        peers: PeerSession,
        notifier: Notifier,
        audio_levels: AudioLevelMonitor,
        chat_log: ChatLog,
        on_kicked: KickHandler,
        debounce: float = 0.3,
    ) -> None:
        self._store = store
        self._machine = machine
        self._peers = peers
        self._notifier = notifier
        self._audio_levels = audio_levels
        self._chat_log = chat_log
        self._on_kicked = on_kicked
        self._debouncer: Debouncer[Snapshot] = Debouncer(debounce, self._settle, name="members-debounce")
        self._handles: list[SubscriptionHandle] = []
        self._room_id: str | None = None
        self._member_id: str | None = None
        self._previous_count = 0
        self._known_peers: set[str] = set()
        self._members: dict[str, MemberRecord] = {}

    @property
    def room_id(self) -> str | None:
        return self._room_id

    @property
    def members(self) -> dict[str, MemberRecord]:
        return dict(self._members)

    @property
    def known_peers(self) -> frozenset[str]:
        return frozenset(self._known_peers)

    async def start(self, room_id: str, member_id: str, *, member_count: int) -> None:
        await self.stop()
        self._room_id = room_id
        self._member_id = member_id
        self._previous_count = member_count
        self._audio_levels.set_member_id(member_id)
        self._handles = [
            await self._store.subscribe(paths.members_path(room_id), EventKind.VALUE, self._on_members),
            await self._store.subscribe(paths.signals_path(room_id), EventKind.CHILD_ADDED, self._on_signal),
            await self._store.subscribe(paths.messages_path(room_id), EventKind.CHILD_ADDED, self._on_message),
        ]
        logger.debug("Room listeners attached", extra={"room": room_id, "member": member_id})

    async def stop(self) -> None:
        self._debouncer.cancel()
        handles, self._handles = self._handles, []
        for handle in handles:
            await self._store.unsubscribe(handle)
        self._room_id = None
        self._member_id = None
        self._members = {}

    def connect_peers(self, member_ids: list[str]) -> None:
        """Open initiator connections to the members present when we joined."""

        for remote_id in member_ids:
            if remote_id == self._member_id or remote_id in self._known_peers:
                continue
            self._known_peers.add(remote_id)
            self._peers.create_peer(remote_id, True)

    def reset_peers(self) -> None:
        self._known_peers.clear()
        self._peers.cleanup()

    async def settled(self) -> None:
        """Wait for a pending debounced member update to run."""

        await self._debouncer.wait()

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------
    async def _on_members(self, snapshot: Snapshot) -> None:
        self._debouncer.push(snapshot)

    async def _settle(self, snapshot: Snapshot | None) -> None:
        member_id = self._member_id
        if snapshot is None or member_id is None:
            return
        members = parse_members(snapshot.value)
        self._members = members
        count = len(members)
        present = member_id in members
        room_members.set(count)

        self._notifier.emit(
            "members",
            {
                "room_id": self._room_id,
                "members": {key: member.model_dump(by_alias=True) for key, member in members.items()},
            },
        )

        if present and self._previous_count > 0 and count != self._previous_count:
            self._notifier.sound(SoundKind.JOIN if count > self._previous_count else SoundKind.LEAVE)
        self._previous_count = count

        if count == 0:
            self._chat_log.clear()

        for remote_id in list(self._known_peers):
            if remote_id not in members:
                self._known_peers.discard(remote_id)
                self._peers.close_peer(remote_id)

        self._audio_levels.update_muted_states(members)

        if not present and self._should_treat_as_kick(member_id):
            # Latch before awaiting so a second settle cannot fire again.
            self._machine.mark_intentional_leave()
            room_id = self._room_id
            room_deleted = room_id is not None and not await self._room_exists(room_id)
            if room_deleted:
                logger.info("Room deleted while joined", extra={"room": room_id})
            else:
                kicks_detected_total.inc()
                logger.warning("Own member record vanished; treating as removal", extra={"room": room_id})
            await self._on_kicked(room_deleted)

    def _should_treat_as_kick(self, member_id: str) -> bool:
        return (
            self._machine.is_joined
            and self._machine.member_id == member_id
            and not self._machine.intentional_leave
            and self._store.connected
        )

    async def _room_exists(self, room_id: str) -> bool:
        try:
            snapshot = await self._store.read(paths.room_path(room_id))
        except StoreError:
            logger.debug("Room lookup failed; assuming removal", exc_info=True, extra={"room": room_id})
            return True
        return snapshot.exists()

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------
    async def _on_signal(self, snapshot: Snapshot) -> None:
        member_id = self._member_id
        if member_id is None or not isinstance(snapshot.value, dict):
            return
        if snapshot.value.get("to") != member_id:
            return
        try:
            envelope = SignalEnvelope.model_validate(snapshot.value)
        except ValueError:
            logger.warning("Dropping malformed signal envelope", extra={"signal": snapshot.key})
            signals_consumed_total.labels("malformed").inc()
            await self._delete(snapshot.path)
            return

        outcome = "handled"
        try:
            if envelope.sender not in self._known_peers:
                self._known_peers.add(envelope.sender)
                self._peers.create_peer(envelope.sender, False)
            self._peers.handle_signal(envelope)
        except Exception:
            outcome = "failed"
            logger.exception("Peer session rejected signal", extra={"sender": envelope.sender})
        signals_consumed_total.labels(outcome).inc()
        await self._delete(snapshot.path)

    async def _delete(self, path: str) -> None:
        try:
            await self._store.remove(path)
        except StoreError:
            logger.debug("Failed to delete consumed signal", exc_info=True, extra={"path": path})

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    async def _on_message(self, snapshot: Snapshot) -> None:
        if not isinstance(snapshot.value, dict):
            return
        try:
            message = ChatMessage.model_validate(snapshot.value)
        except ValueError:
            logger.debug("Skipping malformed chat message", extra={"message_id": snapshot.key})
            return
        if self._chat_log.append(snapshot.key, message):
            self._notifier.emit(
                "message",
                {"room_id": self._room_id, "id": snapshot.key, **message.model_dump(by_alias=True)},
            )
