"""Schemas for room and session endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, constr


class RoomCreate(BaseModel):
    """Payload for creating a new room."""

    name: constr(strip_whitespace=True, min_length=1, max_length=50) = Field(
        ..., description="Human readable room name"
    )
    room_id: constr(pattern=r"^[A-Za-z0-9_\-]{1,50}$") | None = Field(
        default=None, description="Explicit room id; generated when omitted"
    )


class RoomRead(BaseModel):
    """Rooms directory entry."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    creator_id: str | None = None
    member_count: int
    is_creator: bool
    created_at: int | None = None


class RoomCreated(RoomRead):
    member_id: str | None = None


class JoinResponse(BaseModel):
    room_id: str
    member_id: str | None
    joined: bool = Field(description="False when another join or leave was already running")


class SessionRead(BaseModel):
    state: str
    room_id: str | None
    member_id: str | None
    is_intentional_leave: bool
    reconnect_attempts: int
    join_locked: bool
    connected: bool
    nickname: str
    muted: bool
    speaker_muted: bool
    members: dict[str, dict] = Field(default_factory=dict)


class SessionUpdate(BaseModel):
    muted: bool | None = None
    speaker_muted: bool | None = None


class MessageCreate(BaseModel):
    text: constr(strip_whitespace=True, min_length=1, max_length=2000)


class MessageRead(BaseModel):
    id: str
    author: str
    user_id: str | None = Field(default=None, alias="userId")
    text: str
    timestamp: int

    model_config = ConfigDict(populate_by_name=True)
