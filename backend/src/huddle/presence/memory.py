"""In-process presence store shared by several simulated clients."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Mapping

from . import paths
from .pushid import generate_push_id
from .store import PresenceStore, Snapshot, StoreError, StoreErrorKind, prune

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _InjectedFailure:
    operation: str
    prefix: str
    kind: StoreErrorKind
    remaining: int


class MemoryDatabase:
    """The shared tree plus per-client disconnect hooks.

    Clients attach through :class:`MemoryPresenceStore`. When a client stays
    offline for ``liveness_timeout`` seconds its hooks are applied, the same
    way a hosted realtime database reacts to a dropped socket.
    """

    def __init__(self, *, liveness_timeout: float = 30.0) -> None:
        self.liveness_timeout = liveness_timeout
        self._root: dict[str, Any] = {}
        self._clients: dict[str, MemoryPresenceStore] = {}
        self._hooks: dict[str, dict[str, Any]] = {}
        self._reapers: dict[str, asyncio.Task[None]] = {}
        self._failures: list[_InjectedFailure] = []

    # ------------------------------------------------------------------
    # Tree access
    # ------------------------------------------------------------------
    def get(self, path: str) -> Any:
        node: Any = self._root
        for segment in _segments(path):
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        return copy.deepcopy(node) if node != {} else None

    def set(self, path: str, value: Any) -> None:
        value = prune(copy.deepcopy(value))
        segments = _segments(path)
        if not segments:
            self._root = value if isinstance(value, dict) else {}
            return
        if value is None:
            self._delete(segments)
            return
        node = self._root
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                child = {}
                node[segment] = child
            node = child
        node[segments[-1]] = value

    def _delete(self, segments: list[str]) -> None:
        trail: list[tuple[dict[str, Any], str]] = []
        node: Any = self._root
        for segment in segments:
            if not isinstance(node, dict) or segment not in node:
                return
            trail.append((node, segment))
            node = node[segment]
        parent, key = trail.pop()
        del parent[key]
        while trail and not parent:
            parent, key = trail.pop()
            del parent[key]

    async def propagate(self, path: str) -> None:
        for client in list(self._clients.values()):
            await client._sync_related(path)

    # ------------------------------------------------------------------
    # Failure injection
    # ------------------------------------------------------------------
    def inject_failure(
        self,
        operation: str,
        prefix: str = "",
        *,
        kind: StoreErrorKind | str = StoreErrorKind.NETWORK,
        times: int = 1,
    ) -> None:
        """Make the next *times* matching operations fail with *kind*."""

        self._failures.append(
            _InjectedFailure(operation, paths.normalize(prefix), StoreErrorKind(kind), times)
        )

    def check_failure(self, operation: str, path: str) -> None:
        path = paths.normalize(path)
        for failure in self._failures:
            if failure.operation not in (operation, "*"):
                continue
            if failure.prefix and not (path == failure.prefix or path.startswith(failure.prefix + "/")):
                continue
            failure.remaining -= 1
            if failure.remaining <= 0:
                self._failures.remove(failure)
            raise StoreError(failure.kind, f"Injected {failure.kind.value} failure", path=path)

    # ------------------------------------------------------------------
    # Clients and disconnect hooks
    # ------------------------------------------------------------------
    def attach(self, client: MemoryPresenceStore) -> None:
        self._clients[client.client_id] = client
        self.client_restored(client.client_id)

    def detach(self, client: MemoryPresenceStore) -> None:
        self._clients.pop(client.client_id, None)

    def register_hook(self, client_id: str, path: str, value: Any) -> None:
        self._hooks.setdefault(client_id, {})[paths.normalize(path)] = copy.deepcopy(value)

    def cancel_hook(self, client_id: str, path: str) -> None:
        hooks = self._hooks.get(client_id)
        if hooks:
            hooks.pop(paths.normalize(path), None)

    def hooks_for(self, client_id: str) -> dict[str, Any]:
        return dict(self._hooks.get(client_id, {}))

    def client_lost(self, client_id: str) -> None:
        if client_id in self._reapers:
            return
        self._reapers[client_id] = asyncio.create_task(
            self._reap_after_timeout(client_id), name=f"presence-memory-reaper-{client_id}"
        )

    def client_restored(self, client_id: str) -> None:
        task = self._reapers.pop(client_id, None)
        if task is not None:
            task.cancel()

    async def run_disconnect_hooks(self, client_id: str) -> None:
        """Apply and forget every hook *client_id* registered."""

        hooks = self._hooks.pop(client_id, {})
        for path, value in hooks.items():
            self.set(path, value)
            logger.debug("Applied disconnect hook", extra={"client": client_id, "path": path})
        for path in hooks:
            await self.propagate(path)

    async def _reap_after_timeout(self, client_id: str) -> None:
        try:
            await asyncio.sleep(self.liveness_timeout)
        except asyncio.CancelledError:
            return
        self._reapers.pop(client_id, None)
        await self.run_disconnect_hooks(client_id)

    async def close(self) -> None:
        for task in list(self._reapers.values()):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._reapers.clear()


class MemoryPresenceStore(PresenceStore):
    """One client connection to a :class:`MemoryDatabase`."""

    backend_name = "memory"

    def __init__(self, database: MemoryDatabase, client_id: str | None = None) -> None:
        super().__init__(client_id or uuid.uuid4().hex)
        self._database = database
        self._crashed = False

    @property
    def database(self) -> MemoryDatabase:
        return self._database

    async def start(self) -> None:
        await super().start()
        self._crashed = False
        self._database.attach(self)
        self._set_connected(True)

    async def stop(self) -> None:
        self._database.detach(self)
        self._connected = False
        await super().stop()

    # ------------------------------------------------------------------
    # Connectivity simulation
    # ------------------------------------------------------------------
    def go_offline(self) -> None:
        """Drop the connection; hooks run if it is not restored in time."""

        if not self._connected:
            return
        self._database.client_lost(self.client_id)
        self._set_connected(False)

    async def go_online(self) -> None:
        if self._connected or self._crashed:
            return
        self._database.client_restored(self.client_id)
        self._set_connected(True)
        await self._sync_all()

    def crash(self) -> None:
        """Vanish without any local cleanup; only the disconnect hooks remain."""

        self._crashed = True
        self._database.client_lost(self.client_id)
        self._database.detach(self)
        self._connected = False
        for state in self._subscriptions.values():
            state.active = False

    # ------------------------------------------------------------------
    # Data operations
    # ------------------------------------------------------------------
    def _precheck(self, operation: str, path: str) -> None:
        self._ensure_connected(operation, path)
        try:
            self._database.check_failure(operation, path)
        except StoreError as exc:
            self._record_error(operation, exc.kind)
            raise

    async def read(self, path: str) -> Snapshot:
        path = paths.normalize(path)
        self._precheck("read", path)
        return Snapshot(path, self._database.get(path))

    async def write(self, path: str, value: Any) -> None:
        path = paths.normalize(path)
        self._precheck("write", path)
        self._database.set(path, value)
        await self._database.propagate(path)

    async def update(self, path: str, values: Mapping[str, Any]) -> None:
        path = paths.normalize(path)
        self._precheck("update", path)
        for key, value in values.items():
            self._database.set(paths.join(path, key), value)
        await self._database.propagate(path)

    async def write_child(self, path: str, value: Any) -> str:
        path = paths.normalize(path)
        self._precheck("write_child", path)
        key = generate_push_id()
        child = paths.join(path, key)
        self._database.set(child, value)
        await self._database.propagate(child)
        return key

    async def remove(self, path: str) -> None:
        path = paths.normalize(path)
        self._precheck("remove", path)
        self._database.set(path, None)
        await self._database.propagate(path)

    async def on_lost_connection(self, path: str, cleanup_value: Any = None) -> None:
        self._precheck("on_lost_connection", path)
        self._database.register_hook(self.client_id, path, cleanup_value)

    async def cancel_on_lost_connection(self, path: str) -> None:
        self._precheck("cancel_on_lost_connection", path)
        self._database.cancel_hook(self.client_id, path)

    async def _fetch(self, path: str) -> Any:
        return self._database.get(path)


def _segments(path: str) -> list[str]:
    normalized = paths.normalize(path)
    return normalized.split("/") if normalized else []
