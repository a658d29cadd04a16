"""Endpoints acting on the current room session."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from app.api.deps import get_room_client, room_errors
from app.schemas import MessageCreate, MessageRead, SessionRead, SessionUpdate
from app.services import runtime
from huddle.rooms import RoomClient

router = APIRouter(prefix="/session", tags=["session"])


def _serialize_session(client: RoomClient) -> SessionRead:
    snapshot = client.session
    return SessionRead(
        **snapshot.as_dict(),
        connected=runtime.get_store().connected,
        nickname=client.identity.nickname,
        muted=client.identity.muted,
        speaker_muted=client.identity.speaker_muted,
        members=client.members,
    )


@router.get("", response_model=SessionRead)
async def read_session(client: RoomClient = Depends(get_room_client)) -> SessionRead:
    return _serialize_session(client)


@router.patch("", response_model=SessionRead)
async def update_session(payload: SessionUpdate, client: RoomClient = Depends(get_room_client)) -> SessionRead:
    """Change mute flags; they are published to the member record when joined."""

    if payload.muted is not None:
        await client.set_muted(payload.muted)
    if payload.speaker_muted is not None:
        await client.set_speaker_muted(payload.speaker_muted)
    return _serialize_session(client)


@router.post("/leave", response_model=SessionRead)
async def leave_room(client: RoomClient = Depends(get_room_client)) -> SessionRead:
    await client.leave_room()
    return _serialize_session(client)


@router.get("/messages", response_model=list[MessageRead])
async def list_messages(client: RoomClient = Depends(get_room_client)) -> list[MessageRead]:
    return [MessageRead.model_validate(entry) for entry in client.chat_log.as_list()]


@router.post("/messages", status_code=status.HTTP_202_ACCEPTED)
async def send_message(payload: MessageCreate, client: RoomClient = Depends(get_room_client)) -> dict[str, str]:
    with room_errors():
        message_id = await client.send_message(payload.text)
    return {"id": message_id}
