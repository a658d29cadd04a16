"""Sinks for room lifecycle telemetry."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping

import httpx

logger = logging.getLogger(__name__)


class LoggingEventSink:
    async def write(self, event: str, payload: Mapping[str, Any]) -> None:
        logger.info("Room event %s", event, extra={"event": event, "payload": dict(payload)})


class HttpEventSink:
    """POST each event as JSON to a collector endpoint."""

    def __init__(self, endpoint: str, *, client_id: str, timeout: float = 5.0) -> None:
        self._endpoint = endpoint
        self._client_id = client_id
        self._timeout = timeout

    async def write(self, event: str, payload: Mapping[str, Any]) -> None:
        body = {
            "event": event,
            "client": self._client_id,
            "payload": dict(payload),
            "reported_at": datetime.now(timezone.utc).isoformat(),
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(self._endpoint, json=body)
            response.raise_for_status()
