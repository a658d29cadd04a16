"""Remembers the member id of the last session across process restarts."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class JournalEntry:
    room_id: str
    member_id: str


class SessionJournal:
    """Tiny JSON file holding ``{room_id, member_id}`` of the live session.

    Used after a crash to find and drop the previous session's member record
    before it expires on its own. All I/O errors are logged and ignored.
    """

    def __init__(self, path: Path | None) -> None:
        self._path = path
        self._entry: JournalEntry | None = None
        self._loaded = False

    def previous_member_id(self, room_id: str) -> str | None:
        entry = self.load()
        if entry is not None and entry.room_id == room_id:
            return entry.member_id
        return None

    def load(self) -> JournalEntry | None:
        if self._loaded:
            return self._entry
        self._loaded = True
        if self._path is None or not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            self._entry = JournalEntry(room_id=str(data["room_id"]), member_id=str(data["member_id"]))
        except (OSError, ValueError, KeyError, TypeError):
            logger.warning("Ignoring unreadable session journal", extra={"path": str(self._path)})
            self._entry = None
        return self._entry

    def save(self, room_id: str, member_id: str) -> None:
        self._entry = JournalEntry(room_id=room_id, member_id=member_id)
        self._loaded = True
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                json.dumps({"room_id": room_id, "member_id": member_id}), encoding="utf-8"
            )
        except OSError:
            logger.warning("Failed to write session journal", exc_info=True, extra={"path": str(self._path)})

    def clear(self) -> None:
        self._entry = None
        self._loaded = True
        if self._path is None:
            return
        try:
            self._path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Failed to clear session journal", exc_info=True, extra={"path": str(self._path)})
