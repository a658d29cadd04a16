"""Pydantic schemas for API payloads."""

from .rooms import (
    JoinResponse,
    MessageCreate,
    MessageRead,
    RoomCreate,
    RoomCreated,
    RoomRead,
    SessionRead,
    SessionUpdate,
)

__all__ = [
    "JoinResponse",
    "MessageCreate",
    "MessageRead",
    "RoomCreate",
    "RoomCreated",
    "RoomRead",
    "SessionRead",
    "SessionUpdate",
]
