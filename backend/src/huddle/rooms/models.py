"""Wire models for records stored under ``rooms/``."""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def now_ms() -> int:
    return int(time.time() * 1000)


class _StoreModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class MemberRecord(_StoreModel):
    """A client's presence entry at ``rooms/{roomId}/users/{memberId}``."""

    nick: str = Field(..., min_length=1)
    mute: bool = False
    speaker_muted: bool = Field(default=False, alias="speakerMuted")
    user_id: str | None = Field(default=None, alias="userId")
    joined_at: int = Field(default_factory=now_ms, alias="joinedAt")


class RoomRecord(_StoreModel):
    name: str
    creator_id: str | None = Field(default=None, alias="creatorId")
    created_at: int = Field(default_factory=now_ms, alias="createdAt")
    users: dict[str, MemberRecord] = Field(default_factory=dict)

    @field_validator("users", mode="before")
    @classmethod
    def drop_malformed_members(cls, value: Any) -> dict[str, Any]:
        if not isinstance(value, dict):
            return {}
        return {key: member for key, member in value.items() if isinstance(member, dict) and member.get("nick")}

    def is_created_by(self, account_id: str | None) -> bool:
        return account_id is not None and self.creator_id == account_id

    def is_visible_to(self, account_id: str | None) -> bool:
        """Rooms are listed for their creator and for accounts currently inside."""

        if account_id is None:
            return False
        if self.is_created_by(account_id):
            return True
        return any(member.user_id == account_id for member in self.users.values())


class SignalEnvelope(_StoreModel):
    """One-shot peer negotiation payload addressed to a single member."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    to: str
    sender: str = Field(..., alias="from")
    signal: Any = None


class ChatMessage(_StoreModel):
    author: str
    user_id: str | None = Field(default=None, alias="userId")
    text: str
    timestamp: int = Field(default_factory=now_ms)


class RoomSummary(BaseModel):
    """Directory entry shown in the rooms list."""

    id: str
    name: str
    creator_id: str | None = None
    member_count: int = 0
    is_creator: bool = False
    created_at: int | None = None

    @classmethod
    def from_record(cls, room_id: str, record: RoomRecord, account_id: str | None) -> RoomSummary:
        return cls(
            id=room_id,
            name=record.name,
            creator_id=record.creator_id,
            member_count=len(record.users),
            is_creator=account_id is not None and record.creator_id == account_id,
            created_at=record.created_at,
        )


def parse_members(value: Any) -> dict[str, MemberRecord]:
    """Parse a ``users`` node, skipping entries that are not member records."""

    members: dict[str, MemberRecord] = {}
    if not isinstance(value, dict):
        return members
    for member_id, raw in value.items():
        if not isinstance(raw, dict):
            continue
        try:
            members[member_id] = MemberRecord.model_validate(raw)
        except ValueError:
            continue
    return members
