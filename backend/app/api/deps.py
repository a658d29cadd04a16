"""FastAPI dependencies for the API layer."""

from __future__ import annotations

import contextlib
from typing import Iterator

from fastapi import HTTPException, status

from app.services import runtime
from huddle.presence.store import StoreError
from huddle.rooms import RoomClient
from huddle.rooms.errors import (
    AlreadyInRoom,
    InvalidRoomId,
    MessageRejected,
    NotRoomCreator,
    RoomError,
    RoomFull,
    RoomJoinFailed,
    RoomNotFound,
)

_STATUS_BY_ERROR: tuple[tuple[type[RoomError], int], ...] = (
    (RoomNotFound, status.HTTP_404_NOT_FOUND),
    (RoomFull, status.HTTP_409_CONFLICT),
    (AlreadyInRoom, status.HTTP_409_CONFLICT),
    (NotRoomCreator, status.HTTP_403_FORBIDDEN),
    (InvalidRoomId, status.HTTP_400_BAD_REQUEST),
    (MessageRejected, status.HTTP_400_BAD_REQUEST),
    (RoomJoinFailed, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def get_room_client() -> RoomClient:
    """Return the running room client or fail with 503 while starting up."""

    try:
        return runtime.get_room_client()
    except RuntimeError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Presence core is not running"
        ) from exc


def status_for(exc: RoomError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


@contextlib.contextmanager
def room_errors() -> Iterator[None]:
    """Translate room core failures into HTTP errors."""

    try:
        yield
    except RoomError as exc:
        raise HTTPException(status_code=status_for(exc), detail={"code": exc.code, "message": exc.notice}) from exc
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": f"store_{exc.kind.value}", "message": "Presence store is unavailable"},
        ) from exc
