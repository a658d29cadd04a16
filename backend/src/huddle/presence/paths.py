"""Path helpers for the hierarchical presence tree."""

from __future__ import annotations

import re

ROOMS_ROOT = "rooms"
MEMBERS_NODE = "users"
SIGNALS_NODE = "signals"
MESSAGES_NODE = "messages"

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_\-]+$")


def normalize(path: str) -> str:
    """Strip surrounding slashes and collapse empty segments."""

    return "/".join(segment for segment in path.split("/") if segment)


def join(*parts: str) -> str:
    return normalize("/".join(part for part in parts if part))


def split(path: str) -> tuple[str, str]:
    """Return ``(parent, key)`` for *path*; the root has no key."""

    path = normalize(path)
    if not path:
        return "", ""
    parent, _, key = path.rpartition("/")
    return parent, key


def key_of(path: str) -> str:
    return split(path)[1]


def is_valid_segment(segment: str) -> bool:
    return bool(_SEGMENT_RE.match(segment))


def is_related(first: str, second: str) -> bool:
    """Whether a change at one path can affect the value at the other."""

    first = normalize(first)
    second = normalize(second)
    if not first or not second or first == second:
        return True
    return first.startswith(second + "/") or second.startswith(first + "/")


def room_path(room_id: str) -> str:
    return join(ROOMS_ROOT, room_id)


def members_path(room_id: str) -> str:
    return join(ROOMS_ROOT, room_id, MEMBERS_NODE)


def member_path(room_id: str, member_id: str) -> str:
    return join(ROOMS_ROOT, room_id, MEMBERS_NODE, member_id)


def signals_path(room_id: str) -> str:
    return join(ROOMS_ROOT, room_id, SIGNALS_NODE)


def messages_path(room_id: str) -> str:
    return join(ROOMS_ROOT, room_id, MESSAGES_NODE)


__all__ = [
    "MEMBERS_NODE",
    "MESSAGES_NODE",
    "ROOMS_ROOT",
    "SIGNALS_NODE",
    "is_related",
    "is_valid_segment",
    "join",
    "key_of",
    "member_path",
    "members_path",
    "messages_path",
    "normalize",
    "room_path",
    "signals_path",
    "split",
]
