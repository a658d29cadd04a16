"""Interfaces of the subsystems the room core drives but does not own."""

from __future__ import annotations

import enum
import logging
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from .models import MemberRecord, SignalEnvelope

logger = logging.getLogger(__name__)


class NoticeKind(str, enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class SoundKind(str, enum.Enum):
    JOIN = "join"
    LEAVE = "leave"


@runtime_checkable
class PeerSession(Protocol):
    """Media connections keyed by remote member id."""

    def create_peer(self, remote_id: str, initiator: bool) -> None: ...

    def handle_signal(self, envelope: SignalEnvelope) -> None: ...

    def close_peer(self, remote_id: str) -> None: ...

    def cleanup(self) -> None: ...


@runtime_checkable
class Notifier(Protocol):
    """UI side effects. Everything except ``confirm`` must return immediately."""

    def notify(self, kind: NoticeKind, message: str) -> None: ...

    def sound(self, kind: SoundKind) -> None: ...

    def emit(self, event: str, payload: Mapping[str, Any]) -> None: ...

    async def confirm(self, prompt: str) -> bool: ...


@runtime_checkable
class AudioLevelMonitor(Protocol):
    def update_muted_states(self, members: Mapping[str, MemberRecord]) -> None: ...

    def set_member_id(self, member_id: str | None) -> None: ...

    def stop(self) -> None: ...


@runtime_checkable
class EventSink(Protocol):
    """Destination for room lifecycle telemetry (``CREATE``, ``ENTER``, ...)."""

    async def write(self, event: str, payload: Mapping[str, Any]) -> None: ...


class BestEffortSink:
    """Fan out telemetry to sinks without ever raising to the caller."""

    def __init__(self, sinks: Sequence[EventSink] = ()) -> None:
        self._sinks = list(sinks)

    def add(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    async def record(self, event: str, **payload: Any) -> None:
        for sink in self._sinks:
            try:
                await sink.write(event, payload)
            except Exception:
                logger.debug(
                    "Telemetry sink failed", exc_info=True, extra={"event": event, "sink": type(sink).__name__}
                )


class NullPeerSession:
    """Peer session used when no media layer is attached."""

    def create_peer(self, remote_id: str, initiator: bool) -> None:
        logger.debug("No media layer; peer %s not created", remote_id)

    def handle_signal(self, envelope: SignalEnvelope) -> None:
        logger.debug("No media layer; dropping signal from %s", envelope.sender)

    def close_peer(self, remote_id: str) -> None:
        return None

    def cleanup(self) -> None:
        return None


class LoggingNotifier:
    def notify(self, kind: NoticeKind, message: str) -> None:
        logger.info("%s: %s", NoticeKind(kind).value, message)

    def sound(self, kind: SoundKind) -> None:
        logger.debug("Sound %s", SoundKind(kind).value)

    def emit(self, event: str, payload: Mapping[str, Any]) -> None:
        logger.debug("UI event %s", event)

    async def confirm(self, prompt: str) -> bool:
        return True


class NullAudioLevelMonitor:
    def update_muted_states(self, members: Mapping[str, MemberRecord]) -> None:
        return None

    def set_member_id(self, member_id: str | None) -> None:
        return None

    def stop(self) -> None:
        return None


__all__ = [
    "AudioLevelMonitor",
    "BestEffortSink",
    "EventSink",
    "LoggingNotifier",
    "NoticeKind",
    "Notifier",
    "NullAudioLevelMonitor",
    "NullPeerSession",
    "PeerSession",
    "SoundKind",
]
