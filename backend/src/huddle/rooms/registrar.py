"""Creation and removal of this client's member record and of rooms."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any

from huddle.presence import paths
from huddle.presence.store import PresenceStore, StoreError, StoreErrorKind

from .constants import ROOM_ID_ALPHABET, RoomLimits
from .errors import MembershipConflict, NotRoomCreator, RoomFull, RoomJoinFailed, RoomNotFound
from .models import ChatMessage, MemberRecord, RoomRecord, SignalEnvelope, now_ms, parse_members
from .session import MemberHandle

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JoinResult:
    handle: MemberHandle
    member: MemberRecord
    others: dict[str, MemberRecord] = field(default_factory=dict)

    @property
    def member_count(self) -> int:
        return len(self.others) + 1


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    encoded = []
    while value:
        value, remainder = divmod(value, 36)
        encoded.append(digits[remainder])
    return "".join(reversed(encoded))


class MembershipRegistrar:
    """Store-side half of joining and leaving.

    Callers must hold the state machine's join lock around :meth:`join` and
    :meth:`leave`. Reads happen once per call; nothing here is transactional.
    """

    def __init__(self, store: PresenceStore, *, limits: RoomLimits | None = None) -> None:
        self._store = store
        self._limits = limits or RoomLimits()

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------
    async def join(
        self,
        room_id: str,
        *,
        nickname: str,
        muted: bool = False,
        speaker_muted: bool = False,
        account_id: str | None = None,
        previous_member_id: str | None = None,
    ) -> JoinResult:
        snapshot = await self._store.read(paths.members_path(room_id))
        members = parse_members(snapshot.value)

        if previous_member_id and previous_member_id in members:
            conflict = MembershipConflict(room_id=room_id)
            logger.warning(
                "Removing stale member record left by a previous session",
                extra={"room": room_id, "member": previous_member_id, "code": conflict.code},
            )
            try:
                await self._store.remove(paths.member_path(room_id, previous_member_id))
            except StoreError:
                logger.warning(
                    "Failed to remove stale member record",
                    exc_info=True,
                    extra={"room": room_id, "member": previous_member_id},
                )
            else:
                members.pop(previous_member_id, None)

        if len(members) >= self._limits.max_members:
            raise RoomFull(room_id=room_id)

        record = MemberRecord(
            nick=nickname,
            mute=muted,
            speaker_muted=speaker_muted,
            user_id=account_id,
            joined_at=now_ms(),
        )
        try:
            member_id = await self._store.write_child(paths.members_path(room_id), record.to_store())
        except StoreError as exc:
            raise RoomJoinFailed(room_id=room_id) from exc

        member_path = paths.member_path(room_id, member_id)
        try:
            await self._store.on_lost_connection(member_path, None)
        except StoreError as exc:
            logger.warning(
                "Disconnect hook registration failed; withdrawing member record",
                extra={"room": room_id, "member": member_id},
            )
            await self._discard(member_path)
            raise RoomJoinFailed(room_id=room_id) from exc

        handle = MemberHandle(room_id=room_id, member_id=member_id, path=member_path)
        logger.info(
            "Member record created",
            extra={"room": room_id, "member": member_id, "members": len(members) + 1},
        )
        return JoinResult(handle=handle, member=record, others=members)

    async def leave(self, handle: MemberHandle) -> bool:
        """Remove the member record; returns whether a removal succeeded."""

        try:
            await self._store.cancel_on_lost_connection(handle.path)
        except StoreError:
            logger.debug("Could not cancel disconnect hook", exc_info=True, extra={"path": handle.path})

        try:
            await self._store.remove(handle.path)
            return True
        except StoreError:
            logger.warning(
                "Member removal failed; retrying by room and member id",
                exc_info=True,
                extra={"room": handle.room_id, "member": handle.member_id},
            )
        try:
            await self._store.remove(paths.member_path(handle.room_id, handle.member_id))
            return True
        except StoreError:
            logger.warning(
                "Member removal retry failed; the disconnect hook or a peer will clean up",
                extra={"room": handle.room_id, "member": handle.member_id},
            )
            return False

    async def discard_stale(self, handle: MemberHandle) -> bool:
        """Cancel the hook and remove *handle*; ``False`` when the record may still exist."""

        with_hook = True
        try:
            await self._store.cancel_on_lost_connection(handle.path)
        except StoreError:
            with_hook = False
        removed = await self._discard(handle.path)
        logger.debug(
            "Discarded stale member record",
            extra={
                "room": handle.room_id,
                "member": handle.member_id,
                "hook_cancelled": with_hook,
                "removed": removed,
            },
        )
        return removed

    async def update_member(self, handle: MemberHandle, **fields: Any) -> None:
        aliases = {"muted": "mute", "speaker_muted": "speakerMuted", "nickname": "nick"}
        values = {aliases.get(key, key): value for key, value in fields.items()}
        await self._store.update(handle.path, values)

    async def _discard(self, path: str) -> bool:
        try:
            await self._store.remove(path)
        except StoreError:
            logger.debug("Best-effort removal failed", exc_info=True, extra={"path": path})
            return False
        return True

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------
    async def room_exists(self, room_id: str) -> bool:
        snapshot = await self._store.read(paths.room_path(room_id))
        return snapshot.exists()

    async def room_info(self, room_id: str) -> RoomRecord | None:
        snapshot = await self._store.read(paths.room_path(room_id))
        if not isinstance(snapshot.value, dict):
            return None
        return RoomRecord.model_validate(snapshot.value)

    async def generate_room_id(self) -> str:
        length = self._limits.room_id_length
        for _ in range(self._limits.room_id_attempts):
            candidate = "".join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(length))
            if not await self.room_exists(candidate):
                return candidate
        fallback = _base36(int(time.time() * 1000))[-length:]
        logger.warning("Room id space looks crowded; using timestamp id", extra={"room": fallback})
        return fallback

    async def create_room(self, room_id: str, name: str, creator_id: str | None) -> RoomRecord:
        record = RoomRecord(name=name, creator_id=creator_id, created_at=now_ms())
        await self._store.write(paths.room_path(room_id), record.to_store())
        logger.info("Room created", extra={"room": room_id, "creator": creator_id})
        return record

    async def delete_room(self, room_id: str, account_id: str | None) -> None:
        record = await self.room_info(room_id)
        if record is None:
            raise RoomNotFound(room_id=room_id)
        if not record.is_created_by(account_id):
            raise NotRoomCreator(room_id=room_id)
        await self._store.remove(paths.room_path(room_id))
        logger.info("Room deleted", extra={"room": room_id})

    async def clear_messages(self, room_id: str) -> None:
        await self._discard(paths.messages_path(room_id))

    async def send_signal(self, room_id: str, sender: str, recipient: str, signal: Any) -> str:
        envelope = SignalEnvelope(to=recipient, sender=sender, signal=signal)
        return await self._store.write_child(paths.signals_path(room_id), envelope.to_store())

    async def post_message(self, room_id: str, message: ChatMessage) -> str:
        return await self._store.write_child(paths.messages_path(room_id), message.to_store())


def is_terminal(exc: BaseException) -> bool:
    """Failures that must not be retried by the reconnection loop."""

    cause = exc.__cause__ if isinstance(exc, RoomJoinFailed) else exc
    if isinstance(cause, StoreError):
        return cause.kind is not StoreErrorKind.NETWORK
    return not isinstance(exc, RoomJoinFailed)
