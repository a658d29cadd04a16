"""Construction and lifecycle of the presence store and room client."""

from __future__ import annotations

import logging

from app.config import Settings, get_settings
from app.services.telemetry import HttpEventSink, LoggingEventSink
from app.services.ui_hub import UiEventHub, audio_levels_for
from huddle.presence import MemoryDatabase, MemoryPresenceStore, PresenceStore, RedisPresenceStore, RedisStoreConfig
from huddle.rooms import BestEffortSink, Identity, RoomClient, SessionJournal

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_store(settings: Settings, *, database: MemoryDatabase | None = None) -> PresenceStore:
    if settings.presence_store_backend == "redis":
        return RedisPresenceStore(
            RedisStoreConfig(
                url=settings.presence_redis_url,
                namespace=settings.presence_namespace,
                client_id=settings.presence_client_id,
                heartbeat_interval=settings.presence_heartbeat_interval_seconds,
                liveness_timeout=settings.presence_liveness_timeout_seconds,
            )
        )
    database = database or MemoryDatabase(liveness_timeout=settings.presence_liveness_timeout_seconds)
    return MemoryPresenceStore(database, settings.presence_client_id)


def build_sink(settings: Settings) -> BestEffortSink:
    sink = BestEffortSink([LoggingEventSink()])
    if settings.telemetry_endpoint is not None:
        sink.add(
            HttpEventSink(
                str(settings.telemetry_endpoint),
                client_id=settings.presence_client_id,
                timeout=settings.telemetry_timeout_seconds,
            )
        )
    return sink


def build_room_client(store: PresenceStore, hub: UiEventHub, settings: Settings) -> RoomClient:
    return RoomClient(
        store,
        identity=Identity(nickname=settings.huddle_nickname, account_id=settings.huddle_account_id),
        peers=hub,
        notifier=hub,
        audio_levels=audio_levels_for(hub),
        sink=build_sink(settings),
        journal=SessionJournal(settings.session_journal_path),
        timings=settings.room_timings,
        limits=settings.room_limits,
    )


# ---------------------------------------------------------------------------
# Module level lifecycle helpers
# ---------------------------------------------------------------------------


settings = get_settings()

ui_hub = UiEventHub(confirm_timeout=settings.ui_confirm_timeout_seconds)

_store: PresenceStore | None = None
_room_client: RoomClient | None = None


async def startup_presence() -> None:
    """Start the pieces in dependency order: UI hub, store, then the room client."""

    global _store, _room_client
    await ui_hub.start()
    store = build_store(settings)
    try:
        await store.start()
    except Exception:
        logger.exception(
            "Presence store failed to start", extra={"backend": settings.presence_store_backend}
        )
        await store.stop()
        raise
    client = build_room_client(store, ui_hub, settings)
    await client.start()
    _store, _room_client = store, client
    logger.info(
        "Presence core started",
        extra={"backend": settings.presence_store_backend, "client": store.client_id},
    )


async def shutdown_presence() -> None:
    global _store, _room_client
    client, store = _room_client, _store
    _room_client, _store = None, None
    if client is not None:
        await client.stop()
    if store is not None:
        await store.stop()
        if isinstance(store, MemoryPresenceStore):
            await store.database.close()
    await ui_hub.stop()


# Convenience accessors exposed to the FastAPI layer ----------------------


def get_room_client() -> RoomClient:
    if _room_client is None:
        raise RuntimeError("Presence core is not running")
    return _room_client


def get_store() -> PresenceStore:
    if _store is None:
        raise RuntimeError("Presence core is not running")
    return _store


def get_ui_hub() -> UiEventHub:
    return ui_hub


__all__ = [
    "build_room_client",
    "build_sink",
    "build_store",
    "get_room_client",
    "get_store",
    "get_ui_hub",
    "shutdown_presence",
    "startup_presence",
    "ui_hub",
]
