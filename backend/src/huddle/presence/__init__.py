"""Realtime tree store adapters used for room presence."""

from .memory import MemoryDatabase, MemoryPresenceStore
from .redis_store import RedisPresenceStore, RedisStoreConfig
from .store import (
    EventKind,
    PresenceStore,
    Snapshot,
    StoreError,
    StoreErrorKind,
    SubscriptionHandle,
)

__all__ = [
    "EventKind",
    "MemoryDatabase",
    "MemoryPresenceStore",
    "PresenceStore",
    "RedisPresenceStore",
    "RedisStoreConfig",
    "Snapshot",
    "StoreError",
    "StoreErrorKind",
    "SubscriptionHandle",
]
