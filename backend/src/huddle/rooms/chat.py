"""Bounded chat history and outgoing message checks."""

from __future__ import annotations

import time
from collections import deque
from typing import Callable, Iterator

from .errors import MessageRejected
from .models import ChatMessage


class ChatLog:
    """Ring buffer of the most recent room messages, oldest first."""

    def __init__(self, max_messages: int = 200) -> None:
        self._messages: deque[tuple[str, ChatMessage]] = deque(maxlen=max_messages)
        self._seen: set[str] = set()

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return (message for _, message in self._messages)

    def append(self, message_id: str, message: ChatMessage) -> bool:
        if message_id in self._seen:
            return False
        if len(self._messages) == self._messages.maxlen:
            evicted, _ = self._messages[0]
            self._seen.discard(evicted)
        self._messages.append((message_id, message))
        self._seen.add(message_id)
        return True

    def clear(self) -> None:
        self._messages.clear()
        self._seen.clear()

    def as_list(self) -> list[dict[str, object]]:
        return [
            {"id": message_id, **message.model_dump(by_alias=True)}
            for message_id, message in self._messages
        ]


class OutgoingMessagePolicy:
    """Length and rate checks applied before a message reaches the store."""

    def __init__(
        self,
        *,
        max_length: int = 200,
        rate_limit: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_length = max_length
        self._rate_limit = rate_limit
        self._clock = clock
        self._last_sent: float | None = None
        self.sending = False

    def check(self, text: str) -> str:
        text = text.strip()
        if not text:
            raise MessageRejected("Message is empty")
        if len(text) > self._max_length:
            raise MessageRejected(f"Message is longer than {self._max_length} characters")
        if self.sending:
            raise MessageRejected("Previous message is still being sent")
        now = self._clock()
        if self._last_sent is not None and now - self._last_sent < self._rate_limit:
            raise MessageRejected("You are sending messages too fast")
        return text

    def mark_sent(self) -> None:
        self._last_sent = self._clock()
