"""Chronologically sortable keys for atomic appends."""

from __future__ import annotations

import secrets
import threading
import time

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

_lock = threading.Lock()
_last_timestamp = 0
_last_random: list[int] = [0] * 12


def generate_push_id(now_ms: int | None = None) -> str:
    """Return a 20 character key that sorts after every key generated before it.

    Eight characters encode the millisecond timestamp, twelve are random. Keys
    created within the same millisecond increment the random part instead of
    redrawing it so ordering holds inside one process.
    """

    global _last_timestamp
    timestamp = int(time.time() * 1000) if now_ms is None else now_ms
    with _lock:
        if timestamp == _last_timestamp:
            index = 11
            while index >= 0 and _last_random[index] == 63:
                _last_random[index] = 0
                index -= 1
            if index >= 0:
                _last_random[index] += 1
        else:
            for index in range(12):
                _last_random[index] = secrets.randbelow(64)
        _last_timestamp = timestamp
        random_part = "".join(PUSH_CHARS[value] for value in _last_random)

    time_part = []
    for _ in range(8):
        time_part.append(PUSH_CHARS[timestamp % 64])
        timestamp //= 64
    return "".join(reversed(time_part)) + random_part
