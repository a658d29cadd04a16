"""Contract for the realtime tree store backing room presence."""

from __future__ import annotations

import abc
import asyncio
import contextlib
import enum
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator, Mapping

from huddle.monitoring.metrics import presence_store_errors_total, presence_subscriptions

from . import paths

logger = logging.getLogger(__name__)


class StoreErrorKind(str, enum.Enum):
    NETWORK = "network"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"


class StoreError(RuntimeError):
    """Raised when a store operation cannot be completed."""

    def __init__(self, kind: StoreErrorKind, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.kind = StoreErrorKind(kind)
        self.path = path

    @property
    def retryable(self) -> bool:
        return self.kind is StoreErrorKind.NETWORK


class EventKind(str, enum.Enum):
    VALUE = "value"
    CHILD_ADDED = "child_added"
    CHILD_CHANGED = "child_changed"
    CHILD_REMOVED = "child_removed"


@dataclass(slots=True, frozen=True)
class Snapshot:
    """Immutable view of the value stored at *path*."""

    path: str
    value: Any = None

    @property
    def key(self) -> str:
        return paths.key_of(self.path)

    def exists(self) -> bool:
        return self.value is not None

    def children(self) -> Iterator[Snapshot]:
        if not isinstance(self.value, dict):
            return
        for key in sorted(self.value):
            yield Snapshot(paths.join(self.path, key), self.value[key])

    def child(self, key: str) -> Snapshot:
        value = self.value.get(key) if isinstance(self.value, dict) else None
        return Snapshot(paths.join(self.path, key), value)

    @property
    def num_children(self) -> int:
        return len(self.value) if isinstance(self.value, dict) else 0


SnapshotHandler = Callable[[Snapshot], Awaitable[None]]
ConnectivityHandler = Callable[[bool], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class SubscriptionHandle:
    """Handle returned by :meth:`PresenceStore.subscribe`."""

    id: int
    path: str
    kind: EventKind


_MISSING = object()
_subscription_ids = itertools.count(1)


@dataclass(slots=True)
class _SubscriptionState:
    handle: SubscriptionHandle
    handler: SnapshotHandler
    last: Any = _MISSING
    active: bool = True
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def diff_events(kind: EventKind, path: str, previous: Any, current: Any) -> list[Snapshot]:
    """Compute the events a listener of *kind* at *path* should observe."""

    if kind is EventKind.VALUE:
        if previous is _MISSING or previous != current:
            return [Snapshot(path, current)]
        return []

    before = previous if isinstance(previous, dict) else {}
    after = current if isinstance(current, dict) else {}
    if kind is EventKind.CHILD_ADDED:
        keys = [key for key in sorted(after) if key not in before]
        return [Snapshot(paths.join(path, key), after[key]) for key in keys]
    if kind is EventKind.CHILD_CHANGED:
        keys = [key for key in sorted(after) if key in before and before[key] != after[key]]
        return [Snapshot(paths.join(path, key), after[key]) for key in keys]
    keys = [key for key in sorted(before) if key not in after]
    return [Snapshot(paths.join(path, key), before[key]) for key in keys]


def prune(value: Any) -> Any:
    """Drop ``None`` leaves and empty branches; an empty tree becomes ``None``."""

    if isinstance(value, Mapping):
        result = {}
        for key, child in value.items():
            pruned = prune(child)
            if pruned is not None:
                result[str(key)] = pruned
        return result or None
    return value


class PresenceStore(abc.ABC):
    """Hierarchical key-value store with change subscriptions.

    Handlers registered through :meth:`subscribe` and
    :meth:`add_connectivity_listener` are awaited one at a time from a single
    delivery task, in the order the store observed the changes. A handler that
    raises is logged and delivery continues.
    """

    backend_name = "abstract"

    def __init__(self, client_id: str) -> None:
        self.client_id = client_id
        self._subscriptions: dict[int, _SubscriptionState] = {}
        self._connectivity_handlers: list[ConnectivityHandler] = []
        self._queue: asyncio.Queue[tuple[Callable[..., Awaitable[None]], Any, _SubscriptionState | None]] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._connected = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._queue = asyncio.Queue()
            self._worker = asyncio.create_task(
                self._deliver(), name=f"presence-delivery-{self.client_id}"
            )

    async def stop(self) -> None:
        for state in list(self._subscriptions.values()):
            state.active = False
            presence_subscriptions.labels(state.handle.kind.value).dec()
        self._subscriptions.clear()
        self._connectivity_handlers.clear()
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        self._queue = None

    async def flush(self) -> None:
        """Wait until every queued delivery has been handled."""

        if self._queue is not None:
            await self._queue.join()

    @property
    def connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Data operations
    # ------------------------------------------------------------------
    @abc.abstractmethod
    async def read(self, path: str) -> Snapshot:
        """Return the current value at *path*."""

    @abc.abstractmethod
    async def write(self, path: str, value: Any) -> None:
        """Replace the value at *path*; ``None`` removes it."""

    @abc.abstractmethod
    async def update(self, path: str, values: Mapping[str, Any]) -> None:
        """Replace the listed children of *path*, keeping the others."""

    @abc.abstractmethod
    async def write_child(self, path: str, value: Any) -> str:
        """Append *value* under a generated, chronologically ordered key."""

    @abc.abstractmethod
    async def remove(self, path: str) -> None:
        """Delete *path* and everything below it."""

    @abc.abstractmethod
    async def on_lost_connection(self, path: str, cleanup_value: Any = None) -> None:
        """Register a write the store applies once this client is gone."""

    @abc.abstractmethod
    async def cancel_on_lost_connection(self, path: str) -> None:
        """Cancel a hook registered with :meth:`on_lost_connection`."""

    @abc.abstractmethod
    async def _fetch(self, path: str) -> Any:
        """Return the raw value at *path* for subscription syncing."""

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    async def subscribe(
        self, path: str, kind: EventKind | str, handler: SnapshotHandler
    ) -> SubscriptionHandle:
        handle = SubscriptionHandle(
            id=next(_subscription_ids), path=paths.normalize(path), kind=EventKind(kind)
        )
        state = _SubscriptionState(handle=handle, handler=handler)
        self._subscriptions[handle.id] = state
        presence_subscriptions.labels(handle.kind.value).inc()
        if self._connected:
            await self._sync(state)
        logger.debug(
            "Subscribed to presence path",
            extra={"path": handle.path, "kind": handle.kind.value, "client": self.client_id},
        )
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        state = self._subscriptions.pop(handle.id, None)
        if state is None:
            return
        state.active = False
        presence_subscriptions.labels(handle.kind.value).dec()

    def add_connectivity_listener(self, handler: ConnectivityHandler) -> Callable[[], None]:
        self._connectivity_handlers.append(handler)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._connectivity_handlers.remove(handler)

        return remove

    # ------------------------------------------------------------------
    # Helpers for backends
    # ------------------------------------------------------------------
    def _set_connected(self, value: bool) -> None:
        if value == self._connected:
            return
        self._connected = value
        logger.info(
            "Presence store connectivity changed",
            extra={"client": self.client_id, "connected": value, "backend": self.backend_name},
        )
        for handler in list(self._connectivity_handlers):
            self._enqueue(handler, value, None)

    async def _sync(self, state: _SubscriptionState) -> None:
        async with state.lock:
            if not state.active:
                return
            current = await self._fetch(state.handle.path)
            events = diff_events(state.handle.kind, state.handle.path, state.last, current)
            state.last = current
        for snapshot in events:
            self._enqueue(state.handler, snapshot, state)

    async def _sync_related(self, path: str) -> None:
        if not self._connected:
            return
        for state in list(self._subscriptions.values()):
            if paths.is_related(state.handle.path, path):
                await self._sync(state)

    async def _sync_all(self) -> None:
        for state in list(self._subscriptions.values()):
            await self._sync(state)

    def _ensure_connected(self, operation: str, path: str) -> None:
        if not self._connected:
            self._record_error(operation, StoreErrorKind.NETWORK)
            raise StoreError(
                StoreErrorKind.NETWORK, f"Store is offline; cannot {operation}", path=path
            )

    def _record_error(self, operation: str, kind: StoreErrorKind) -> None:
        presence_store_errors_total.labels(self.backend_name, operation, kind.value).inc()

    def _enqueue(
        self,
        handler: Callable[..., Awaitable[None]],
        argument: Any,
        state: _SubscriptionState | None,
    ) -> None:
        if self._queue is None:
            logger.debug("Dropped presence event; delivery is not running")
            return
        self._queue.put_nowait((handler, argument, state))

    async def _deliver(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            handler, argument, state = await queue.get()
            try:
                if state is None or state.active:
                    await handler(argument)
            except asyncio.CancelledError:
                raise
            except Exception:
                path = state.handle.path if state is not None else None
                logger.exception(
                    "Presence listener failed", extra={"path": path, "client": self.client_id}
                )
            finally:
                queue.task_done()


__all__ = [
    "ConnectivityHandler",
    "EventKind",
    "PresenceStore",
    "Snapshot",
    "SnapshotHandler",
    "StoreError",
    "StoreErrorKind",
    "SubscriptionHandle",
    "diff_events",
    "prune",
]
