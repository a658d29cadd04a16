"""Single-shot timers owned by the components that arm them."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from typing import Any, Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TimerCallback = Callable[[], Awaitable[None] | None]


class Timer:
    """Cancelable, re-armable one-shot timer.

    ``arm()`` replaces any pending run, so at most one callback is ever
    scheduled. Cancelling only stops a timer that has not fired yet; a
    callback already running finishes. Exceptions from the callback are
    logged, never propagated.
    """

    def __init__(self, delay: float, callback: TimerCallback, *, name: str = "timer") -> None:
        self.delay = delay
        self._callback = callback
        self._name = name
        self._task: asyncio.Task[None] | None = None
        self._running: asyncio.Task[Any] | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, delay: float | None = None) -> None:
        self.cancel()
        self._task = asyncio.create_task(
            self._run(self.delay if delay is None else delay), name=self._name
        )

    def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not self._running:
            task.cancel()

    async def wait(self) -> None:
        """Wait for a pending run to finish (used on teardown and in tests)."""

        task = self._task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._running = asyncio.current_task()
        try:
            result = self._callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timer callback failed", extra={"timer": self._name})
        finally:
            self._running = None


class Debouncer(Generic[T]):
    """Collapse bursts of values into one call with the latest value."""

    def __init__(
        self,
        delay: float,
        callback: Callable[[T], Awaitable[None] | None],
        *,
        name: str = "debounce",
    ) -> None:
        self._callback = callback
        self._latest: Any = None
        self._timer = Timer(delay, self._fire, name=name)

    @property
    def pending(self) -> bool:
        return self._timer.active

    def push(self, value: T) -> None:
        self._latest = value
        self._timer.arm()

    def cancel(self) -> None:
        self._timer.cancel()
        self._latest = None

    async def wait(self) -> None:
        await self._timer.wait()

    async def _fire(self) -> None:
        value, self._latest = self._latest, None
        result = self._callback(value)
        if inspect.isawaitable(result):
            await result
