"""Cancellable scheduled tasks on a pluggable clock.

Components never call asyncio timer APIs directly. They take a Clock and
build ScheduledTask (one-shot, re-armable) or PeriodicTask on top of it, so
tests can drive time with VirtualClock.advance().

Usage:
    clock = AsyncioClock()
    flush_timer = ScheduledTask(clock, flush, name="batch:story_views")
    flush_timer.arm(1.0)   # re-arming replaces the pending fire
    flush_timer.cancel()
"""

import asyncio
import heapq
import inspect
import itertools
import time
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Set, Tuple, Union

from core.logging import get_logger

logger = get_logger(__name__)

TimerCallback = Callable[[], Union[None, Awaitable[Any]]]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Clock(Protocol):
    """Time source plus one-shot scheduling."""

    def now(self) -> float:
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class AsyncioClock:
    """Wall-clock time with scheduling on the running event loop."""

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(max(delay, 0.0), callback)


class _VirtualHandle:
    def __init__(self, due: float, callback: Callable[[], None]):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualClock:
    """Manually advanced clock for deterministic timing tests."""

    def __init__(self, start: float = 0.0, settle_rounds: int = 25):
        self._now = start
        self._settle_rounds = settle_rounds
        self._heap: List[Tuple[float, int, _VirtualHandle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _VirtualHandle:
        handle = _VirtualHandle(self._now + max(delay, 0.0), callback)
        heapq.heappush(self._heap, (handle.due, next(self._seq), handle))
        return handle

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, h in self._heap if not h.cancelled)

    async def settle(self) -> None:
        """Yield to the loop until spawned coroutines have had a chance to run."""
        for _ in range(self._settle_rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """Move time forward, firing due callbacks in due order."""
        target = self._now + seconds
        while self._heap and self._heap[0][0] <= target:
            due, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            self._now = due
            handle.callback()
            await self.settle()
        self._now = target
        await self.settle()


async def sleep(clock: Clock, delay: float) -> None:
    """Suspend for `delay` seconds of `clock` time."""
    future = asyncio.get_running_loop().create_future()

    def _wake():
        if not future.done():
            future.set_result(None)

    handle = clock.call_later(delay, _wake)
    try:
        await future
    finally:
        handle.cancel()


class BackgroundTasks:
    """Holds references to fire-and-forget tasks and logs their failures."""

    def __init__(self, name: str = "background"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background task failed", group=self.name,
                         error=str(error), error_type=type(error).__name__)

    def __len__(self) -> int:
        return len(self._tasks)

    async def wait(self) -> None:
        """Wait for every task spawned so far (and any they spawn)."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class ScheduledTask:
    """One-shot task that can be armed, re-armed, cancelled or fired now."""

    def __init__(self, clock: Clock, callback: TimerCallback, name: str = "task",
                 tasks: Optional[BackgroundTasks] = None):
        self.clock = clock
        self.callback = callback
        self.name = name
        self.tasks = tasks or BackgroundTasks(name)
        self._handle: Optional[TimerHandle] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, delay: float) -> None:
        """Schedule the callback `delay` seconds from now, replacing any pending fire."""
        self.cancel()
        self._handle = self.clock.call_later(delay, self._on_timer)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def fire(self) -> Optional[asyncio.Task]:
        """Run the callback immediately; coroutine callbacks run as tracked tasks."""
        self.cancel()
        result = self.callback()
        if inspect.isawaitable(result):
            return self.tasks.spawn(result)
        return None

    def _on_timer(self) -> None:
        self._handle = None
        try:
            self.fire()
        except Exception as e:
            logger.error("Scheduled task failed", task=self.name, error=str(e))


class PeriodicTask:
    """Runs a callback every `interval` seconds until stopped.

    The next run is armed only after the current one finishes, so runs never
    overlap.
    """

    def __init__(self, clock: Clock, interval: float, callback: TimerCallback,
                 name: str = "periodic"):
        self.clock = clock
        self.interval = interval
        self.callback = callback
        self.name = name
        self.tasks = BackgroundTasks(name)
        self._timer = ScheduledTask(clock, self._run, name=name, tasks=self.tasks)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            logger.warning("Periodic task already running", task=self.name)
            return
        self._running = True
        self._timer.arm(self.interval)
        logger.debug("Periodic task started", task=self.name, interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        self._timer.cancel()
        await self.tasks.cancel()
        logger.debug("Periodic task stopped", task=self.name)

    async def _run(self) -> None:
        try:
            result = self.callback()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Periodic iteration failed", task=self.name, error=str(e))
        finally:
            if self._running:
                self._timer.arm(self.interval)
