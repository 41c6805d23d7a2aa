"""Tests for the clock abstraction and scheduled/periodic tasks."""

import asyncio

import pytest

from core.timers import BackgroundTasks, PeriodicTask, ScheduledTask, VirtualClock, sleep


class TestVirtualClock:

    async def test_callbacks_fire_in_due_order(self):
        clock = VirtualClock()
        fired = []
        clock.call_later(2.0, lambda: fired.append("b"))
        clock.call_later(1.0, lambda: fired.append("a"))
        clock.call_later(5.0, lambda: fired.append("c"))

        await clock.advance(3.0)

        assert fired == ["a", "b"]
        assert clock.now() == 3.0
        assert clock.pending_timers == 1

    async def test_cancelled_handle_never_fires(self):
        clock = VirtualClock()
        fired = []
        handle = clock.call_later(1.0, lambda: fired.append(1))
        handle.cancel()

        await clock.advance(10.0)

        assert fired == []

    async def test_sleep_wakes_on_clock_time(self):
        clock = VirtualClock()
        sleeper = asyncio.ensure_future(sleep(clock, 2.0))

        await clock.advance(1.0)
        assert not sleeper.done()

        await clock.advance(1.5)
        assert sleeper.done()


class TestScheduledTask:

    async def test_rearm_replaces_pending_fire(self):
        clock = VirtualClock()
        fired = []
        task = ScheduledTask(clock, lambda: fired.append(clock.now()), name="debounce")

        task.arm(1.0)
        await clock.advance(0.5)
        task.arm(1.0)
        await clock.advance(0.75)
        assert fired == []

        await clock.advance(0.5)
        assert fired == [1.5]
        assert not task.armed

    async def test_cancel_disarms(self):
        clock = VirtualClock()
        fired = []
        task = ScheduledTask(clock, lambda: fired.append(1))
        task.arm(1.0)
        task.cancel()

        await clock.advance(2.0)

        assert fired == []
        assert not task.armed

    async def test_coroutine_callback_runs_as_task(self):
        clock = VirtualClock()
        done = []

        async def work():
            done.append(clock.now())

        task = ScheduledTask(clock, work)
        task.arm(0.5)
        await clock.advance(1.0)

        assert done == [0.5]

    async def test_failing_callback_is_logged_not_raised(self):
        clock = VirtualClock()

        def boom():
            raise RuntimeError("boom")

        task = ScheduledTask(clock, boom)
        task.arm(0.5)
        await clock.advance(1.0)

        assert not task.armed


class TestPeriodicTask:

    async def test_runs_every_interval_until_stopped(self):
        clock = VirtualClock()
        runs = []
        periodic = PeriodicTask(clock, 30.0, lambda: runs.append(clock.now()), name="drain")

        periodic.start()
        await clock.advance(95.0)
        assert runs == [30.0, 60.0, 90.0]

        await periodic.stop()
        await clock.advance(60.0)
        assert runs == [30.0, 60.0, 90.0]
        assert not periodic.running

    async def test_failing_iteration_keeps_schedule(self):
        clock = VirtualClock()
        runs = []

        def flaky():
            runs.append(clock.now())
            if len(runs) == 1:
                raise ValueError("first run fails")

        periodic = PeriodicTask(clock, 10.0, flaky)
        periodic.start()
        await clock.advance(25.0)
        await periodic.stop()

        assert runs == [10.0, 20.0]


class TestBackgroundTasks:

    async def test_failed_task_is_contained(self):
        tasks = BackgroundTasks("test")

        async def fail():
            raise RuntimeError("background failure")

        tasks.spawn(fail())
        await tasks.wait()

        assert len(tasks) == 0

    async def test_cancel_stops_pending_tasks(self):
        tasks = BackgroundTasks("test")
        started = asyncio.Event()

        async def forever():
            started.set()
            await asyncio.Event().wait()

        task = tasks.spawn(forever())
        await started.wait()
        await tasks.cancel()

        assert task.cancelled()


@pytest.mark.parametrize("delay", [0.0, -1.0])
async def test_non_positive_delay_fires_on_next_advance(delay):
    clock = VirtualClock()
    fired = []
    clock.call_later(delay, lambda: fired.append(1))

    await clock.advance(0.0)

    assert fired == [1]
