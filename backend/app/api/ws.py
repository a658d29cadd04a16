"""WebSocket endpoint streaming room core events to the desktop UI."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, WebSocket
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from app.config import get_settings
from app.services import runtime
from huddle.presence.store import StoreError

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = interval <= 0 or (
                now - last_activity >= interval
                and (last_ping_sent is None or now - last_ping_sent >= interval)
            )
            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send *data*; returns ``False`` when the socket is already gone."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


async def _send_error(websocket: WebSocket, detail: str) -> None:
    await safe_send_json(websocket, {"type": "error", "detail": detail})


def _build_snapshot() -> dict[str, Any]:
    try:
        client = runtime.get_room_client()
        store = runtime.get_store()
    except RuntimeError:
        return {"type": "snapshot", "running": False}
    return {
        "type": "snapshot",
        "running": True,
        "connected": store.connected,
        "session": client.session.as_dict(),
        "members": client.members,
        "messages": client.chat_log.as_list(),
    }


async def _handle_inbound(websocket: WebSocket, payload: dict[str, Any]) -> None:
    message_type = payload.get("type")
    if message_type == "ping":
        await safe_send_json(websocket, {"type": "pong"})
        return
    if message_type == "pong":
        return
    if message_type == "confirm_result":
        request_id = payload.get("id")
        if not isinstance(request_id, str):
            await _send_error(websocket, "Missing confirmation id")
            return
        runtime.get_ui_hub().resolve_confirm(request_id, bool(payload.get("value")))
        return
    if message_type == "signal":
        recipient = payload.get("to")
        if not isinstance(recipient, str) or not recipient:
            await _send_error(websocket, "Missing signal recipient")
            return
        try:
            client = runtime.get_room_client()
            await client.send_signal(recipient, payload.get("signal"))
        except RuntimeError:
            await _send_error(websocket, "Presence core is not running")
        except StoreError as exc:
            logger.warning("Failed to relay signal", extra={"to": recipient, "error": str(exc)})
            await _send_error(websocket, "Signal could not be delivered")
        return
    await _send_error(websocket, "Unsupported message type")


@router.websocket("/events")
async def websocket_events(websocket: WebSocket) -> None:
    """Stream notices, sounds and state changes; accept media signals back."""

    hub = runtime.get_ui_hub()
    await websocket.accept()
    await hub.connect(websocket)
    try:
        await safe_send_json(websocket, _build_snapshot())
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            if not raw_message:
                continue
            if raw_message.strip().lower() == "ping":
                await safe_send_json(websocket, {"type": "pong"})
                continue
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                await _send_error(websocket, "Invalid payload")
                continue
            if not isinstance(payload, dict):
                await _send_error(websocket, "Invalid payload")
                continue
            await _handle_inbound(websocket, payload)
    finally:
        await hub.disconnect(websocket)
