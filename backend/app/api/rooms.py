"""Rooms directory and room lifecycle endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status

from app.api.deps import get_room_client, room_errors
from app.schemas import JoinResponse, RoomCreate, RoomCreated, RoomRead
from huddle.rooms import RoomClient

router = APIRouter(prefix="/rooms", tags=["rooms"])


@router.get("", response_model=list[RoomRead])
async def list_rooms(
    force: bool = Query(default=False, description="Bypass the directory cache"),
    client: RoomClient = Depends(get_room_client),
) -> list[RoomRead]:
    """Rooms the local account created or is currently inside."""

    with room_errors():
        rooms = await client.list_rooms(force=force)
    return [RoomRead.model_validate(room.model_dump()) for room in rooms]


@router.post("", response_model=RoomCreated, status_code=status.HTTP_201_CREATED)
async def create_room(payload: RoomCreate, client: RoomClient = Depends(get_room_client)) -> RoomCreated:
    """Create a room and join it as its creator."""

    with room_errors():
        summary = await client.create_room(payload.name, room_id=payload.room_id)
    return RoomCreated(**summary.model_dump(), member_id=client.session.member_id)


@router.post("/{room_id}/join", response_model=JoinResponse)
async def join_room(room_id: str, client: RoomClient = Depends(get_room_client)) -> JoinResponse:
    with room_errors():
        handle = await client.join_room(room_id)
    return JoinResponse(
        room_id=room_id,
        member_id=handle.member_id if handle is not None else None,
        joined=handle is not None,
    )


@router.delete("/{room_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_room(
    room_id: str,
    confirmed: bool = Query(default=False, description="Skip the UI confirmation prompt"),
    client: RoomClient = Depends(get_room_client),
) -> Response:
    """Delete a room; only its creator may do so."""

    with room_errors():
        deleted = await client.delete_room(room_id, confirmed=confirmed)
    if not deleted:
        return Response(status_code=status.HTTP_409_CONFLICT)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
