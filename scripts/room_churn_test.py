"""Utility for stress-testing room presence with many joining and leaving clients."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import random
import signal
import statistics
import sys
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable

from huddle.presence import (
    MemoryDatabase,
    MemoryPresenceStore,
    PresenceStore,
    RedisPresenceStore,
    RedisStoreConfig,
    paths,
)
from huddle.rooms import Identity, RoomClient, RoomError, RoomLimits, RoomTimings
from huddle.presence.store import StoreError


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerResult:
    """Outcome of one simulated client."""

    cycles: int = 0
    join_latencies: list[float] = field(default_factory=list)
    leave_latencies: list[float] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration: float = 0.0


def _build_store(args: argparse.Namespace, database: MemoryDatabase | None, index: int) -> PresenceStore:
    client_id = f"churn-{index}-{uuid.uuid4().hex[:6]}"
    if args.backend == "redis":
        return RedisPresenceStore(
            RedisStoreConfig(url=args.redis_url, namespace=args.namespace, client_id=client_id)
        )
    assert database is not None
    return MemoryPresenceStore(database, client_id)


async def _worker(
    index: int,
    args: argparse.Namespace,
    database: MemoryDatabase | None,
    room_id: str,
) -> WorkerResult:
    """Join, hold and leave *room_id* until the cycle budget is spent."""

    result = WorkerResult()
    started = time.perf_counter()
    store = _build_store(args, database, index)
    await store.start()
    client = RoomClient(
        store,
        identity=Identity(nickname=f"churn-{index}", account_id=f"churn-account-{index}"),
        timings=RoomTimings(members_debounce=args.debounce),
        limits=RoomLimits(max_members=args.max_members, chat_rate_limit=0.0),
    )
    await client.start()
    try:
        for _ in range(args.cycles):
            join_started = time.perf_counter()
            try:
                handle = await client.join_room(room_id)
            except (RoomError, StoreError) as exc:
                result.errors.append(type(exc).__name__)
                await asyncio.sleep(args.hold)
                continue
            if handle is not None:
                result.join_latencies.append(time.perf_counter() - join_started)
            await asyncio.sleep(args.hold * random.uniform(0.5, 1.5))

            leave_started = time.perf_counter()
            if await client.leave_room():
                result.leave_latencies.append(time.perf_counter() - leave_started)
            result.cycles += 1
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # pragma: no cover - backend failures are non-deterministic
        result.errors.append(f"{type(exc).__name__}: {exc}")
        logger.warning("worker %s failed: %s", index, exc)
    finally:
        await client.stop()
        await store.stop()
        result.duration = time.perf_counter() - started
    return result


def _aggregate(results: Iterable[WorkerResult], remaining_members: int) -> dict[str, Any]:
    """Compute summary metrics for all workers."""

    results = list(results)
    join_latencies = [lat for item in results for lat in item.join_latencies]
    leave_latencies = [lat for item in results for lat in item.leave_latencies]

    def _stats(samples: list[float]) -> dict[str, float] | None:
        if not samples:
            return None
        samples_sorted = sorted(samples)
        count = len(samples_sorted)
        return {
            "avg": statistics.fmean(samples_sorted),
            "p50": statistics.median(samples_sorted),
            "p95": samples_sorted[int(0.95 * (count - 1))],
            "p99": samples_sorted[int(0.99 * (count - 1))],
            "max": samples_sorted[-1],
        }

    return {
        "clients": len(results),
        "cycles": sum(item.cycles for item in results),
        "joins": len(join_latencies),
        "join_latency": _stats(join_latencies),
        "leave_latency": _stats(leave_latencies),
        "errors": dict(Counter(error for item in results for error in item.errors)),
        "remaining_members": remaining_members,
        "wall_clock_seconds": max((item.duration for item in results), default=0.0),
    }


async def run_churn_test(args: argparse.Namespace) -> dict[str, Any]:
    """Entry point used by the CLI wrapper."""

    database = MemoryDatabase() if args.backend == "memory" else None
    admin = _build_store(args, database, -1)
    await admin.start()
    room_id = args.room or uuid.uuid4().hex[:8]
    await admin.write(paths.room_path(room_id), {"name": "Churn test", "createdAt": int(time.time() * 1000)})

    logger.info(
        "starting churn test: backend=%s clients=%s cycles=%s room=%s",
        args.backend,
        args.clients,
        args.cycles,
        room_id,
    )

    tasks = [
        asyncio.create_task(_worker(index, args, database, room_id), name=f"room-churn-worker-{index}")
        for index in range(args.clients)
    ]

    def _cancel(signum: int, _frame: Any) -> None:  # pragma: no cover - signal handling
        logger.warning("received signal %s, cancelling churn test", signum)
        for task in tasks:
            task.cancel()

    handlers: dict[int, Any] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):  # pragma: no cover - platform specific
        with contextlib.suppress(ValueError):
            handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, _cancel)

    try:
        results = await asyncio.gather(*tasks, return_exceptions=False)
    finally:
        for signum, previous in handlers.items():  # pragma: no cover - best effort cleanup
            with contextlib.suppress(ValueError):
                signal.signal(signum, previous)

    members = await admin.read(paths.members_path(room_id))
    summary = _aggregate(results, members.num_children)
    if not args.keep_room:
        await admin.remove(paths.room_path(room_id))
    await admin.stop()
    if database is not None:
        await database.close()
    logger.info("churn test finished: %s cycles, %s members left behind", summary["cycles"], summary["remaining_members"])
    return summary


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--backend", choices=["memory", "redis"], default="memory", help="Presence store backend")
    parser.add_argument("--redis-url", default="redis://localhost:6379/0", help="Redis URL for the redis backend")
    parser.add_argument("--namespace", default="huddle.churn", help="Key prefix used in Redis")
    parser.add_argument("--room", default=None, help="Room id to churn; a random one is created by default")
    parser.add_argument("--clients", type=int, default=8, help="Number of simulated clients")
    parser.add_argument("--cycles", type=int, default=5, help="Join/leave cycles per client")
    parser.add_argument("--hold", type=float, default=0.5, help="Average time spent in the room (seconds)")
    parser.add_argument("--max-members", type=int, default=8, help="Room capacity enforced on join")
    parser.add_argument("--debounce", type=float, default=0.3, help="Member list debounce (seconds)")
    parser.add_argument("--keep-room", action="store_true", help="Do not delete the room afterwards")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit the summary as JSON for machine processing",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log verbosity level",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv or sys.argv[1:])
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    try:
        summary = asyncio.run(run_churn_test(args))
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        logger.warning("interrupted by user")
        return 130

    if args.json:
        print(json.dumps(summary, indent=2, sort_keys=True))
    else:
        print("\n=== Churn Test Summary ===")
        for key, value in summary.items():
            print(f"{key}: {value}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
