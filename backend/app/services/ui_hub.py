"""Fan-out of room core events to the desktop UI over websockets."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import Any, Mapping, Set

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from huddle.rooms.collaborators import NoticeKind, SoundKind
from huddle.rooms.models import MemberRecord, SignalEnvelope

logger = logging.getLogger(__name__)


class UiEventHub:
    """Notifier, peer session and audio monitor backed by UI websockets.

    The media layer lives in the UI, so peer and audio commands are
    forwarded as events too. Outgoing events are queued and sent by one
    pump task, which keeps them in order and never blocks the caller.
    """

    def __init__(self, *, confirm_timeout: float = 30.0) -> None:
        self._connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._confirm_timeout = confirm_timeout
        self._pending_confirms: dict[str, asyncio.Future[bool]] = {}
        self._queue: asyncio.Queue[dict[str, Any]] | None = None
        self._pump: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._pump is None or self._pump.done():
            self._queue = asyncio.Queue()
            self._pump = asyncio.create_task(self._run_pump(), name="ui-event-pump")

    async def stop(self) -> None:
        if self._pump is not None:
            self._pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump
            self._pump = None
        self._queue = None
        for future in self._pending_confirms.values():
            if not future.done():
                future.set_result(False)
        self._pending_confirms.clear()

    async def connect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections.add(websocket)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections.discard(websocket)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def publish(self, payload: dict[str, Any]) -> None:
        if self._queue is None:
            logger.debug("UI hub not running; dropped %s event", payload.get("type"))
            return
        self._queue.put_nowait(payload)

    async def drain(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def _run_pump(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            payload = await queue.get()
            try:
                await self.broadcast(payload)
            finally:
                queue.task_done()

    async def broadcast(self, payload: dict[str, Any]) -> None:
        async with self._lock:
            sockets = list(self._connections)
        for socket in sockets:
            if socket.application_state != WebSocketState.CONNECTED:
                continue
            try:
                await socket.send_json(payload)
            except (RuntimeError, WebSocketDisconnect):
                continue

    # ------------------------------------------------------------------
    # Notifier
    # ------------------------------------------------------------------
    def notify(self, kind: NoticeKind, message: str) -> None:
        self.publish({"type": "notice", "kind": NoticeKind(kind).value, "message": message})

    def sound(self, kind: SoundKind) -> None:
        self.publish({"type": "sound", "sound": SoundKind(kind).value})

    def emit(self, event: str, payload: Mapping[str, Any]) -> None:
        self.publish({"type": event, **payload})

    async def confirm(self, prompt: str) -> bool:
        if not self._connections:
            return False
        request_id = uuid.uuid4().hex
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending_confirms[request_id] = future
        self.publish({"type": "confirm", "id": request_id, "prompt": prompt})
        try:
            return await asyncio.wait_for(future, timeout=self._confirm_timeout)
        except asyncio.TimeoutError:
            logger.info("Confirmation prompt timed out", extra={"prompt": prompt})
            return False
        finally:
            self._pending_confirms.pop(request_id, None)

    def resolve_confirm(self, request_id: str, value: bool) -> bool:
        future = self._pending_confirms.get(request_id)
        if future is None or future.done():
            return False
        future.set_result(bool(value))
        return True

    # ------------------------------------------------------------------
    # Peer session
    # ------------------------------------------------------------------
    def create_peer(self, remote_id: str, initiator: bool) -> None:
        self.publish({"type": "peer.create", "remote_id": remote_id, "initiator": initiator})

    def handle_signal(self, envelope: SignalEnvelope) -> None:
        self.publish({"type": "peer.signal", "remote_id": envelope.sender, "signal": envelope.signal})

    def close_peer(self, remote_id: str) -> None:
        self.publish({"type": "peer.close", "remote_id": remote_id})

    def cleanup(self) -> None:
        self.publish({"type": "peer.cleanup"})

    # ------------------------------------------------------------------
    # Audio levels
    # ------------------------------------------------------------------
    def update_muted_states(self, members: Mapping[str, MemberRecord]) -> None:
        self.publish(
            {
                "type": "audio.muted",
                "members": {
                    member_id: {"mute": member.mute, "speakerMuted": member.speaker_muted}
                    for member_id, member in members.items()
                },
            }
        )

    def set_member_id(self, member_id: str | None) -> None:
        self.publish({"type": "audio.member", "member_id": member_id})

    def stop_monitoring(self) -> None:
        self.publish({"type": "audio.stop"})


class _AudioLevelAdapter:
    """Exposes the hub under the audio monitor's ``stop`` name."""

    def __init__(self, hub: UiEventHub) -> None:
        self._hub = hub

    def update_muted_states(self, members: Mapping[str, MemberRecord]) -> None:
        self._hub.update_muted_states(members)

    def set_member_id(self, member_id: str | None) -> None:
        self._hub.set_member_id(member_id)

    def stop(self) -> None:
        self._hub.stop_monitoring()


def audio_levels_for(hub: UiEventHub) -> _AudioLevelAdapter:
    return _AudioLevelAdapter(hub)
