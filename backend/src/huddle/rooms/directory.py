"""Cached, filtered view of the rooms list."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from huddle.monitoring.metrics import directory_loads_total
from huddle.presence import paths
from huddle.presence.store import EventKind, PresenceStore, Snapshot, SubscriptionHandle

from .models import RoomRecord, RoomSummary
from .timers import Timer

logger = logging.getLogger(__name__)

RoomsData = dict[str, Any]
Loader = Callable[[], Awaitable[RoomsData]]
UpdateHandler = Callable[[list[RoomSummary]], Awaitable[None] | None]


class RoomsDirectoryCache:
    """Time-bounded cache of the raw ``rooms`` node.

    Concurrent misses share one in-flight load; its result (or error) is
    handed to every waiter. Incremental patches keep the cache fresh.
    """

    def __init__(self, ttl: float = 5.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._data: RoomsData | None = None
        self._updated_at: float | None = None
        self._pending: asyncio.Future[RoomsData] | None = None

    def is_valid(self) -> bool:
        return (
            self._data is not None
            and self._updated_at is not None
            and self._clock() - self._updated_at < self._ttl
        )

    @property
    def data(self) -> RoomsData | None:
        return None if self._data is None else dict(self._data)

    async def get(self, load: Loader) -> RoomsData:
        if self.is_valid():
            directory_loads_total.labels("cache").inc()
            return dict(self._data or {})
        if self._pending is not None:
            directory_loads_total.labels("shared").inc()
            return dict(await asyncio.shield(self._pending))

        future: asyncio.Future[RoomsData] = asyncio.get_running_loop().create_future()
        self._pending = future
        directory_loads_total.labels("store").inc()
        try:
            data = await load()
        except BaseException as exc:
            if not isinstance(exc, asyncio.CancelledError):
                future.set_exception(exc)
                # Waiters re-raise it; mark retrieved for the case with none.
                future.exception()
            else:
                future.cancel()
            raise
        else:
            self._data = dict(data or {})
            self._updated_at = self._clock()
            future.set_result(self._data)
            return dict(self._data)
        finally:
            self._pending = None

    def update_room(self, room_id: str, data: dict[str, Any] | None) -> None:
        if self._data is None:
            return
        if data is None:
            self._data.pop(room_id, None)
        else:
            self._data[room_id] = data
        self._updated_at = self._clock()

    def invalidate(self) -> None:
        self._updated_at = None

    def clear(self) -> None:
        self._data = None
        self._updated_at = None


class RoomsDirectory:
    """Keeps the rooms list of one account in sync with the store."""

    def __init__(
        self,
        store: PresenceStore,
        cache: RoomsDirectoryCache,
        *,
        account_id: str | None,
        on_update: UpdateHandler | None = None,
        refresh_debounce: float = 1.0,
    ) -> None:
        self._store = store
        self._cache = cache
        self._account_id = account_id
        self._on_update = on_update
        self._handles: list[SubscriptionHandle] = []
        self._refresh = Timer(refresh_debounce, self.refresh, name="directory-refresh")
        self._refreshing = False
        self._refresh_again = False

    @property
    def cache(self) -> RoomsDirectoryCache:
        return self._cache

    async def load(self, *, force: bool = False) -> list[RoomSummary]:
        if force:
            self._cache.invalidate()
        data = await self._cache.get(self._read_rooms)
        return self._summaries(data)

    async def start(self) -> None:
        await self.stop()
        root = paths.ROOMS_ROOT
        self._handles = [
            await self._store.subscribe(root, EventKind.CHILD_ADDED, self._on_room_changed),
            await self._store.subscribe(root, EventKind.CHILD_CHANGED, self._on_room_changed),
            await self._store.subscribe(root, EventKind.CHILD_REMOVED, self._on_room_removed),
        ]

    async def stop(self) -> None:
        self._refresh.cancel()
        handles, self._handles = self._handles, []
        for handle in handles:
            await self._store.unsubscribe(handle)

    def schedule_refresh(self) -> None:
        self._refresh.arm()

    async def refresh(self) -> None:
        if self._refreshing:
            self._refresh_again = True
            return
        self._refreshing = True
        try:
            while True:
                self._refresh_again = False
                rooms = await self.load()
                if self._on_update is not None:
                    result = self._on_update(rooms)
                    if asyncio.iscoroutine(result):
                        await result
                if not self._refresh_again:
                    break
        except Exception:
            logger.warning("Rooms directory refresh failed", exc_info=True)
        finally:
            self._refreshing = False

    async def _read_rooms(self) -> RoomsData:
        snapshot = await self._store.read(paths.ROOMS_ROOT)
        return snapshot.value if isinstance(snapshot.value, dict) else {}

    def _summaries(self, data: RoomsData) -> list[RoomSummary]:
        summaries: list[RoomSummary] = []
        for room_id, raw in data.items():
            if not isinstance(raw, dict):
                continue
            try:
                record = RoomRecord.model_validate(raw)
            except ValueError:
                logger.debug("Skipping malformed room", extra={"room": room_id})
                continue
            if record.is_visible_to(self._account_id):
                summaries.append(RoomSummary.from_record(room_id, record, self._account_id))
        summaries.sort(key=lambda summary: (summary.created_at or 0, summary.id), reverse=True)
        return summaries

    async def _on_room_changed(self, snapshot: Snapshot) -> None:
        self._cache.update_room(snapshot.key, snapshot.value if isinstance(snapshot.value, dict) else None)
        self.schedule_refresh()

    async def _on_room_removed(self, snapshot: Snapshot) -> None:
        self._cache.update_room(snapshot.key, None)
        self.schedule_refresh()
