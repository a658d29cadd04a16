"""Presence store backed by Redis hashes and pub/sub change feeds."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping, TYPE_CHECKING

import redis.asyncio as redis_asyncio
from redis.exceptions import AuthenticationError, NoPermissionError, RedisError

from huddle.monitoring.metrics import presence_store_restarts_total

from . import paths
from .pushid import generate_push_id
from .store import PresenceStore, Snapshot, StoreError, StoreErrorKind, prune

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from redis.asyncio import Redis as RedisClient
else:
    RedisClient = Any  # type: ignore[assignment,misc]


logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)
_PERMISSION_ERRORS: tuple[type[BaseException], ...] = (NoPermissionError, AuthenticationError)

_LEAF = "j:"
_BRANCH = "n:"

_REDIS_RECOVERY_BASE_DELAY = 0.5
_REDIS_RECOVERY_MAX_DELAY = 30.0


@dataclass(slots=True)
class RedisStoreConfig:
    """Connection and liveness settings for :class:`RedisPresenceStore`."""

    url: str
    namespace: str = "huddle.presence"
    client_id: str | None = None
    heartbeat_interval: float = 5.0
    liveness_timeout: float = 30.0


class RedisPresenceStore(PresenceStore):
    """Tree store where every branch node is one Redis hash.

    A hash field holds either a JSON leaf (``j:`` prefix) or a branch marker
    (``n:``) whose children live in the hash named after the child path.
    Every mutation is announced on ``<namespace>.changes`` and each client
    re-reads the subscribed paths it affects.

    Liveness is a key refreshed on every heartbeat. Disconnect hooks are kept
    in ``<namespace>:hooks:<client>``; any live client applies the hooks of a
    client whose liveness key expired.
    """

    backend_name = "redis"

    def __init__(
        self,
        config: RedisStoreConfig,
        *,
        client_factory: Callable[..., RedisClient] | None = None,
    ) -> None:
        super().__init__(config.client_id or uuid.uuid4().hex)
        self._config = config
        self._client_factory = client_factory or redis_asyncio.from_url
        self._redis: RedisClient | None = None
        self._pubsub: Any | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._recovery_task: asyncio.Task[None] | None = None
        self._recovery_lock = asyncio.Lock()
        self._stopping = False

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------
    @property
    def _prefix(self) -> str:
        return self._config.namespace.rstrip(".:")

    def _node_key(self, path: str) -> str:
        return f"{self._prefix}:node:{paths.normalize(path)}"

    def _hooks_key(self, client_id: str) -> str:
        return f"{self._prefix}:hooks:{client_id}"

    def _alive_key(self, client_id: str) -> str:
        return f"{self._prefix}:alive:{client_id}"

    def _reap_key(self, client_id: str) -> str:
        return f"{self._prefix}:reap:{client_id}"

    @property
    def _channel(self) -> str:
        return f"{self._prefix}.changes"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        await super().start()
        self._stopping = False
        await self._connect()
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat(), name=f"presence-redis-heartbeat-{self.client_id}"
        )

    async def stop(self) -> None:
        self._stopping = True
        for task in (self._heartbeat_task, self._recovery_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._heartbeat_task = None
        self._recovery_task = None
        await self._stop_reader()
        if self._redis is not None:
            # Let other clients reap our hooks without waiting for the TTL.
            with contextlib.suppress(*_REDIS_ERRORS):
                await self._redis.delete(self._alive_key(self.client_id))
            with contextlib.suppress(Exception):
                await self._redis.close()
            self._redis = None
        self._connected = False
        await super().stop()

    async def _connect(self) -> None:
        client = self._client_factory(self._config.url, encoding="utf-8", decode_responses=True)
        try:
            await client.ping()
        except _REDIS_ERRORS + (OSError,):
            logger.exception("Failed to connect to Redis presence backend")
            with contextlib.suppress(Exception):
                await client.close()
            raise
        self._redis = client
        await self._touch_alive()
        await self._start_reader()
        self._set_connected(True)

    async def _start_reader(self) -> None:
        assert self._redis is not None
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel)
        self._pubsub = pubsub

        async def reader() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    raw = message.get("data")
                    if not isinstance(raw, str):
                        continue
                    try:
                        payload = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("Discarded malformed presence change", extra={"channel": self._channel})
                        continue
                    path = payload.get("path") if isinstance(payload, dict) else None
                    if isinstance(path, str):
                        await self._sync_related(path)
            finally:
                with contextlib.suppress(Exception):
                    await pubsub.unsubscribe(self._channel)
                with contextlib.suppress(Exception):
                    await pubsub.close()

        task = asyncio.create_task(reader(), name=f"presence-redis-reader-{self.client_id}")
        self._reader_task = task
        task.add_done_callback(self._on_reader_done)

    async def _stop_reader(self) -> None:
        task = self._reader_task
        self._reader_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._pubsub = None

    def _on_reader_done(self, task: asyncio.Task[None]) -> None:
        if task is not self._reader_task or self._stopping or task.cancelled():
            return
        self._reader_task = None
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Presence change reader stopped due to error; scheduling recovery",
                exc_info=exc,
                extra={"channel": self._channel},
            )
        else:
            logger.warning(
                "Presence change reader exited unexpectedly; scheduling recovery",
                extra={"channel": self._channel},
            )
        self._connection_lost("reader_stopped")

    # ------------------------------------------------------------------
    # Liveness and recovery
    # ------------------------------------------------------------------
    async def _touch_alive(self) -> None:
        assert self._redis is not None
        await self._redis.set(
            self._alive_key(self.client_id),
            "1",
            px=int(self._config.liveness_timeout * 1000),
        )

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._config.heartbeat_interval)
            if not self._connected or self._redis is None:
                continue
            try:
                await self._touch_alive()
                await self.reap_orphans()
            except (StoreError, *_REDIS_ERRORS):
                logger.warning("Presence heartbeat failed", extra={"client": self.client_id})
                self._connection_lost("heartbeat_failed")

    def _connection_lost(self, reason: str) -> None:
        if self._stopping:
            return
        self._set_connected(False)
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis presence recovery", extra={"reason": reason})
        self._recovery_task = asyncio.create_task(
            self._recovery_runner(reason), name=f"presence-redis-recovery-{self.client_id}"
        )

    async def _recovery_runner(self, reason: str) -> None:
        attempt = 0
        while True:
            delay = min(_REDIS_RECOVERY_BASE_DELAY * (2**attempt), _REDIS_RECOVERY_MAX_DELAY)
            if delay:
                await asyncio.sleep(delay)
            try:
                await self._restart(reason)
            except Exception:
                attempt += 1
                logger.exception(
                    "Redis presence recovery attempt failed",
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            break
        self._recovery_task = None

    async def _restart(self, reason: str) -> None:
        async with self._recovery_lock:
            await self._stop_reader()
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.close()
                self._redis = None
            await self._connect()
            await self._sync_all()
        presence_store_restarts_total.labels(self.backend_name, reason).inc()
        logger.info(
            "Redis presence backend recovered",
            extra={"reason": reason, "subscriptions": len(self._subscriptions)},
        )

    async def reap_orphans(self) -> int:
        """Apply the disconnect hooks of clients whose liveness key expired."""

        redis = self._require("reap")
        reaped = 0
        pattern = f"{self._prefix}:hooks:*"
        async for key in redis.scan_iter(match=pattern):
            owner = key.rsplit(":", 1)[-1]
            if owner == self.client_id:
                continue
            if await redis.exists(self._alive_key(owner)):
                continue
            locked = await redis.set(
                self._reap_key(owner),
                self.client_id,
                nx=True,
                px=int(self._config.liveness_timeout * 1000),
            )
            if not locked:
                continue
            hooks = await redis.hgetall(key)
            await redis.delete(key)
            for path, raw in hooks.items():
                value = json.loads(raw)
                await self._apply(path, value)
                await self._announce(path)
            reaped += 1
            logger.info("Applied disconnect hooks of vanished client", extra={"client": owner, "hooks": len(hooks)})
        return reaped

    # ------------------------------------------------------------------
    # Data operations
    # ------------------------------------------------------------------
    def _require(self, operation: str, path: str = "") -> RedisClient:
        self._ensure_connected(operation, path)
        if self._redis is None:
            self._record_error(operation, StoreErrorKind.NETWORK)
            raise StoreError(StoreErrorKind.NETWORK, "Redis backend is not connected", path=path)
        return self._redis

    def _translate(self, operation: str, path: str, exc: BaseException) -> StoreError:
        if isinstance(exc, _PERMISSION_ERRORS):
            self._record_error(operation, StoreErrorKind.PERMISSION)
            return StoreError(StoreErrorKind.PERMISSION, str(exc) or "Permission denied", path=path)
        self._record_error(operation, StoreErrorKind.NETWORK)
        self._connection_lost(f"{operation}_failed")
        return StoreError(StoreErrorKind.NETWORK, "Redis backend is unavailable", path=path)

    async def read(self, path: str) -> Snapshot:
        path = paths.normalize(path)
        self._require("read", path)
        try:
            value = await self._load(path)
        except _REDIS_ERRORS as exc:
            raise self._translate("read", path, exc) from exc
        return Snapshot(path, value)

    async def write(self, path: str, value: Any) -> None:
        await self._mutate("write", path, lambda: self._apply(path, value))

    async def update(self, path: str, values: Mapping[str, Any]) -> None:
        async def apply() -> None:
            for key, value in values.items():
                await self._apply(paths.join(path, key), value)

        await self._mutate("update", path, apply)

    async def write_child(self, path: str, value: Any) -> str:
        key = generate_push_id()
        child = paths.join(path, key)
        await self._mutate("write_child", child, lambda: self._apply(child, value))
        return key

    async def remove(self, path: str) -> None:
        await self._mutate("remove", path, lambda: self._apply(path, None))

    async def on_lost_connection(self, path: str, cleanup_value: Any = None) -> None:
        path = paths.normalize(path)
        redis = self._require("on_lost_connection", path)
        try:
            await redis.hset(self._hooks_key(self.client_id), path, json.dumps(cleanup_value))
        except _REDIS_ERRORS as exc:
            raise self._translate("on_lost_connection", path, exc) from exc

    async def cancel_on_lost_connection(self, path: str) -> None:
        path = paths.normalize(path)
        redis = self._require("cancel_on_lost_connection", path)
        try:
            await redis.hdel(self._hooks_key(self.client_id), path)
        except _REDIS_ERRORS as exc:
            raise self._translate("cancel_on_lost_connection", path, exc) from exc

    async def _fetch(self, path: str) -> Any:
        if self._redis is None:
            return None
        try:
            return await self._load(paths.normalize(path))
        except _REDIS_ERRORS as exc:
            logger.warning("Failed to refresh subscribed path", extra={"path": path})
            raise self._translate("sync", path, exc) from exc

    async def _mutate(self, operation: str, path: str, apply: Callable[[], Any]) -> None:
        path = paths.normalize(path)
        self._require(operation, path)
        try:
            await apply()
            await self._announce(path)
        except _REDIS_ERRORS as exc:
            raise self._translate(operation, path, exc) from exc

    async def _announce(self, path: str) -> None:
        assert self._redis is not None
        payload = json.dumps({"path": paths.normalize(path), "origin": self.client_id})
        await self._redis.publish(self._channel, payload)
        logger.debug("Published presence change", extra={"path": path})

    # ------------------------------------------------------------------
    # Tree encoding
    # ------------------------------------------------------------------
    async def _load(self, path: str) -> Any:
        assert self._redis is not None
        if not path:
            return await self._load_branch("")
        parent, key = paths.split(path)
        raw = await self._redis.hget(self._node_key(parent), key)
        if raw is None:
            return None
        if raw == _BRANCH:
            return await self._load_branch(path)
        return json.loads(raw[len(_LEAF):])

    async def _load_branch(self, path: str) -> dict[str, Any] | None:
        assert self._redis is not None
        entries = await self._redis.hgetall(self._node_key(path))
        result: dict[str, Any] = {}
        for key, raw in entries.items():
            if raw == _BRANCH:
                child = await self._load_branch(paths.join(path, key))
                if child is not None:
                    result[key] = child
            else:
                result[key] = json.loads(raw[len(_LEAF):])
        return result or None

    async def _apply(self, path: str, value: Any) -> None:
        path = paths.normalize(path)
        value = prune(value)
        await self._delete_tree(path)
        if value is None:
            await self._prune_ancestors(path)
            return
        if not path:
            for key, child in value.items():
                await self._store(key, child)
            return
        await self._store(path, value)
        await self._mark_ancestors(path)

    async def _store(self, path: str, value: Any) -> None:
        assert self._redis is not None
        parent, key = paths.split(path)
        if isinstance(value, dict):
            await self._redis.hset(self._node_key(parent), key, _BRANCH)
            for child_key, child in value.items():
                await self._store(paths.join(path, child_key), child)
        else:
            await self._redis.hset(self._node_key(parent), key, _LEAF + json.dumps(value))

    async def _delete_tree(self, path: str) -> None:
        assert self._redis is not None
        entries = await self._redis.hgetall(self._node_key(path))
        for key, raw in entries.items():
            if raw == _BRANCH:
                await self._delete_tree(paths.join(path, key))
        await self._redis.delete(self._node_key(path))
        if path:
            parent, key = paths.split(path)
            await self._redis.hdel(self._node_key(parent), key)

    async def _mark_ancestors(self, path: str) -> None:
        assert self._redis is not None
        current = paths.split(path)[0]
        while current:
            parent, key = paths.split(current)
            raw = await self._redis.hget(self._node_key(parent), key)
            if raw == _BRANCH:
                return
            await self._redis.hset(self._node_key(parent), key, _BRANCH)
            current = parent

    async def _prune_ancestors(self, path: str) -> None:
        assert self._redis is not None
        current = paths.split(path)[0]
        while current:
            if await self._redis.hlen(self._node_key(current)):
                return
            parent, key = paths.split(current)
            await self._redis.hdel(self._node_key(parent), key)
            current = parent


__all__ = ["RedisPresenceStore", "RedisStoreConfig"]
