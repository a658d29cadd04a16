from __future__ import annotations

import asyncio
import fnmatch
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from huddle.monitoring.metrics import presence_store_restarts_total
from huddle.presence import EventKind, RedisPresenceStore, RedisStoreConfig, Snapshot, StoreError
from huddle.presence import paths


class FakePubSub:
    def __init__(self, server: FakeRedisServer) -> None:
        self._server = server
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._channels: set[str] = set()

    async def subscribe(self, channel: str) -> None:
        self._server.check()
        self._channels.add(channel)
        self._server.subscribers.setdefault(channel, set()).add(self)

    async def unsubscribe(self, channel: str) -> None:
        self._server.subscribers.get(channel, set()).discard(self)
        self._channels.discard(channel)

    async def close(self) -> None:
        for channel in list(self._channels):
            await self.unsubscribe(channel)

    async def listen(self):
        while True:
            message = await self._queue.get()
            if message is None:
                break
            yield message

    def push(self, message: dict[str, Any] | None) -> None:
        self._queue.put_nowait(message)


class FakeRedisServer:
    """Shared keyspace; each :class:`FakeRedis` is one client connection."""

    def __init__(self) -> None:
        self.online = True
        self.hashes: dict[str, dict[str, str]] = {}
        self.strings: dict[str, str] = {}
        self.subscribers: dict[str, set[FakePubSub]] = {}
        self.clients: list[FakeRedis] = []

    def check(self) -> None:
        if not self.online:
            raise RedisConnectionError("offline")

    def client(self, *_args: Any, **_kwargs: Any) -> FakeRedis:
        client = FakeRedis(self)
        self.clients.append(client)
        return client

    def fail(self) -> None:
        self.online = False
        for subscribers in list(self.subscribers.values()):
            for pubsub in list(subscribers):
                pubsub.push(None)
        self.subscribers.clear()


class FakeRedis:
    def __init__(self, server: FakeRedisServer) -> None:
        self._server = server

    async def ping(self) -> bool:
        self._server.check()
        return True

    async def hget(self, key: str, field: str) -> str | None:
        self._server.check()
        return self._server.hashes.get(key, {}).get(field)

    async def hset(self, key: str, field: str, value: str) -> int:
        self._server.check()
        self._server.hashes.setdefault(key, {})[field] = value
        return 1

    async def hdel(self, key: str, field: str) -> int:
        self._server.check()
        entries = self._server.hashes.get(key)
        if not entries or field not in entries:
            return 0
        del entries[field]
        if not entries:
            del self._server.hashes[key]
        return 1

    async def hgetall(self, key: str) -> dict[str, str]:
        self._server.check()
        return dict(self._server.hashes.get(key, {}))

    async def hlen(self, key: str) -> int:
        self._server.check()
        return len(self._server.hashes.get(key, {}))

    async def delete(self, key: str) -> int:
        self._server.check()
        removed = self._server.hashes.pop(key, None) is not None
        removed = self._server.strings.pop(key, None) is not None or removed
        return int(removed)

    async def exists(self, key: str) -> int:
        self._server.check()
        return int(key in self._server.strings or key in self._server.hashes)

    async def set(self, key: str, value: str, *, px: int | None = None, nx: bool = False) -> bool | None:
        self._server.check()
        if nx and key in self._server.strings:
            return None
        self._server.strings[key] = value
        return True

    async def scan_iter(self, match: str = "*"):
        self._server.check()
        for key in list(self._server.hashes):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def publish(self, channel: str, payload: str) -> int:
        self._server.check()
        subscribers = list(self._server.subscribers.get(channel, set()))
        for pubsub in subscribers:
            pubsub.push({"type": "message", "channel": channel, "data": payload})
        return len(subscribers)

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self._server)

    async def close(self) -> None:
        return None


@pytest.fixture()
def server() -> FakeRedisServer:
    return FakeRedisServer()


def make_store(server: FakeRedisServer, client_id: str) -> RedisPresenceStore:
    config = RedisStoreConfig(url="redis://fake", client_id=client_id, heartbeat_interval=60.0)
    return RedisPresenceStore(config, client_factory=server.client)


@pytest.fixture(autouse=True)
def reset_restart_metric():
    presence_store_restarts_total._samples.clear()
    yield
    presence_store_restarts_total._samples.clear()


@pytest.mark.anyio("asyncio")
async def test_tree_round_trip_through_hashes(server) -> None:
    store = make_store(server, "a")
    await store.start()
    try:
        await store.write("rooms/r1", {"name": "Room", "users": {"m1": {"nick": "a", "mute": False}}})
        await store.update("rooms/r1/users/m1", {"mute": True})

        snapshot = await store.read("rooms/r1")
        assert snapshot.value == {"name": "Room", "users": {"m1": {"nick": "a", "mute": True}}}

        await store.remove("rooms/r1/users/m1")
        assert (await store.read("rooms/r1")).value == {"name": "Room"}

        await store.remove("rooms/r1")
        assert (await store.read("rooms")).exists() is False
        assert server.hashes == {}
    finally:
        await store.stop()


@pytest.mark.anyio("asyncio")
async def test_changes_reach_subscribers_of_other_clients(server, wait_until) -> None:
    writer = make_store(server, "writer")
    reader = make_store(server, "reader")
    await writer.start()
    await reader.start()
    received: list[str] = []

    async def on_added(snapshot: Snapshot) -> None:
        received.append(snapshot.value["nick"])

    try:
        await reader.subscribe("rooms/r1/users", EventKind.CHILD_ADDED, on_added)
        await writer.write_child("rooms/r1/users", {"nick": "first"})
        await writer.write_child("rooms/r1/users", {"nick": "second"})

        await wait_until(lambda: len(received) == 2)
        assert received == ["first", "second"]
    finally:
        await writer.stop()
        await reader.stop()


@pytest.mark.anyio("asyncio")
async def test_orphaned_hooks_are_applied_by_a_live_client(server) -> None:
    gone = make_store(server, "gone")
    survivor = make_store(server, "survivor")
    await gone.start()
    await survivor.start()
    try:
        key = await gone.write_child("rooms/r1/users", {"nick": "gone"})
        member = paths.member_path("r1", key)
        await gone.on_lost_connection(member, None)

        assert await survivor.reap_orphans() == 0

        # The process died: its liveness key is gone but its hooks remain.
        server.strings.pop("huddle.presence:alive:gone")
        assert await survivor.reap_orphans() == 1
        assert (await survivor.read(member)).exists() is False
        assert await survivor.reap_orphans() == 0
    finally:
        await gone.stop()
        await survivor.stop()


@pytest.mark.anyio("asyncio")
async def test_store_recovers_after_backend_outage(server, monkeypatch, wait_until) -> None:
    monkeypatch.setattr("huddle.presence.redis_store._REDIS_RECOVERY_BASE_DELAY", 0.01)
    monkeypatch.setattr("huddle.presence.redis_store._REDIS_RECOVERY_MAX_DELAY", 0.05)
    store = make_store(server, "a")
    connectivity: list[bool] = []

    async def on_connectivity(connected: bool) -> None:
        connectivity.append(connected)

    store.add_connectivity_listener(on_connectivity)
    await store.start()
    try:
        server.fail()
        await wait_until(lambda: not store.connected)

        with pytest.raises(StoreError):
            await store.write("rooms/r1/name", "x")

        await asyncio.sleep(0.05)
        server.online = True
        await wait_until(lambda: store.connected)

        await store.write("rooms/r1/name", "x")
        assert (await store.read("rooms/r1/name")).value == "x"
        assert presence_store_restarts_total.value("redis", "reader_stopped") >= 1
        await wait_until(lambda: connectivity[-1:] == [True])
        assert False in connectivity
    finally:
        await store.stop()
