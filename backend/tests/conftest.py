"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
for candidate in (ROOT_DIR, ROOT_DIR / "src"):
    if str(candidate) not in sys.path:
        sys.path.insert(0, str(candidate))

os.environ.setdefault("PRESENCE_STORE_BACKEND", "memory")
os.environ.setdefault("HUDDLE_ACCOUNT_ID", "acct-local")
os.environ.setdefault("HUDDLE_NICKNAME", "Tester")
os.environ.setdefault("MEMBERS_DEBOUNCE_SECONDS", "0.01")
os.environ.setdefault("DIRECTORY_REFRESH_DEBOUNCE_SECONDS", "0.01")
os.environ.setdefault("CHAT_RATE_LIMIT_SECONDS", "0")

from app.main import app  # noqa: E402
from huddle.presence import MemoryDatabase, MemoryPresenceStore  # noqa: E402
from huddle.rooms import Identity, RoomClient, RoomLimits, RoomTimings  # noqa: E402
from huddle.rooms.collaborators import NoticeKind, SoundKind  # noqa: E402
from huddle.rooms.models import MemberRecord, SignalEnvelope  # noqa: E402


FAST_TIMINGS = RoomTimings(
    reconnect_backoff=0.02,
    reconnect_max_attempts=3,
    members_debounce=0.02,
    directory_cache_ttl=5.0,
    directory_refresh_debounce=0.01,
    intentional_leave_cooldown=0.1,
)


class Recorder:
    """Notifier, peer session and audio monitor that remembers every call."""

    def __init__(self) -> None:
        self.notices: list[tuple[NoticeKind, str]] = []
        self.sounds: list[SoundKind] = []
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.peers: list[tuple[str, Any]] = []
        self.signals: list[SignalEnvelope] = []
        self.muted_states: list[dict[str, MemberRecord]] = []
        self.confirm_answer = True

    # Notifier
    def notify(self, kind: NoticeKind, message: str) -> None:
        self.notices.append((kind, message))

    def sound(self, kind: SoundKind) -> None:
        self.sounds.append(kind)

    def emit(self, event: str, payload: Mapping[str, Any]) -> None:
        self.events.append((event, dict(payload)))

    async def confirm(self, prompt: str) -> bool:
        return self.confirm_answer

    # Peer session
    def create_peer(self, remote_id: str, initiator: bool) -> None:
        self.peers.append(("create", (remote_id, initiator)))

    def handle_signal(self, envelope: SignalEnvelope) -> None:
        self.signals.append(envelope)

    def close_peer(self, remote_id: str) -> None:
        self.peers.append(("close", remote_id))

    def cleanup(self) -> None:
        self.peers.append(("cleanup", None))

    # Audio levels
    def update_muted_states(self, members: Mapping[str, MemberRecord]) -> None:
        self.muted_states.append(dict(members))

    def set_member_id(self, member_id: str | None) -> None:
        return None

    def stop(self) -> None:
        return None

    def messages(self) -> list[str]:
        return [message for _, message in self.notices]

    def emitted(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition was not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture(name="wait_until")
def wait_until_fixture() -> Callable[..., Any]:
    return wait_until


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def database() -> MemoryDatabase:
    return MemoryDatabase(liveness_timeout=0.2)


@pytest.fixture()
async def make_client(database: MemoryDatabase):
    """Build started room clients sharing one in-memory database."""

    created: list[tuple[RoomClient, MemoryPresenceStore]] = []

    async def factory(
        nickname: str,
        *,
        account_id: str | None = None,
        journal=None,
        timings: RoomTimings = FAST_TIMINGS,
        limits: RoomLimits | None = None,
        store: MemoryPresenceStore | None = None,
    ) -> tuple[RoomClient, MemoryPresenceStore, Recorder]:
        recorder = Recorder()
        store = store or MemoryPresenceStore(database, f"client-{nickname.lower()}")
        await store.start()
        client = RoomClient(
            store,
            identity=Identity(nickname=nickname, account_id=account_id),
            peers=recorder,
            notifier=recorder,
            audio_levels=recorder,
            journal=journal,
            timings=timings,
            limits=limits,
        )
        await client.start()
        created.append((client, store))
        return client, store, recorder

    yield factory

    for room_client, store in reversed(created):
        await room_client.stop()
        await store.stop()
    await database.close()


@pytest.fixture()
def client() -> Iterator[TestClient]:
    """Yield a FastAPI TestClient running the sidecar with a memory store."""

    with TestClient(app) as test_client:
        yield test_client
