"""Tests for background scenario loops."""

from __future__ import annotations

import asyncio

import pytest

from interchain_harness.errors import HarnessError, HarnessTimeoutError
from interchain_harness.lifecycle import Supervisor
from interchain_harness.scenario import BackgroundTasks


class Counter:
    """A loop body that counts its calls and can be told to fail."""

    def __init__(self) -> None:
        self.calls = 0
        self.raise_on: dict[int, BaseException] = {}

    async def __call__(self) -> None:
        self.calls += 1
        if self.calls in self.raise_on:
            raise self.raise_on[self.calls]


class TestBackgroundLoop:
    """Tests for BackgroundLoop."""

    async def test_sync_waits_for_iterations(self) -> None:
        """sync() returns only after the loop has done the requested work."""
        tasks = BackgroundTasks()
        body = Counter()
        loop = tasks.loop("counter", body, interval=0.01)

        reached = await loop.sync(3, timeout=5)

        assert reached >= 3
        assert body.calls >= 3
        await tasks.close()

    async def test_sync_is_relative_to_current_count(self) -> None:
        tasks = BackgroundTasks()
        loop = tasks.loop("counter", Counter(), interval=0.01)

        first = await loop.sync(1, timeout=5)
        second = await loop.sync(2, timeout=5)

        assert second >= first + 2
        await tasks.close()

    async def test_harness_errors_are_transient(self) -> None:
        """A failed query in one iteration does not end the loop."""
        tasks = BackgroundTasks()
        body = Counter()
        body.raise_on[1] = HarnessError("pool not ready", component="scenario")
        loop = tasks.loop("arb", body, interval=0.01)

        await loop.sync(2, timeout=5)

        assert loop.error is None
        tasks.check()
        await tasks.close()

    async def test_other_errors_are_fatal(self) -> None:
        """An unexpected exception ends the loop and reaches both sync() and the queue."""
        tasks = BackgroundTasks()
        body = Counter()
        failure = ValueError("bad swap route")
        body.raise_on[2] = failure
        loop = tasks.loop("arb", body, interval=0.01)

        with pytest.raises(ValueError, match="bad swap route"):
            await loop.sync(5, timeout=5)

        assert loop.error is failure
        assert loop.done
        with pytest.raises(ValueError, match="bad swap route"):
            tasks.check()
        await tasks.close()

    async def test_sync_timeout(self) -> None:
        """A body that never returns trips the barrier's deadline."""
        tasks = BackgroundTasks()

        async def hang() -> None:
            await asyncio.Event().wait()

        loop = tasks.loop("hung", hang, interval=0.01)

        with pytest.raises(HarnessTimeoutError, match="stuck at iteration 0"):
            await loop.sync(1, timeout=0.05)

        await tasks.close()


class TestBackgroundTasks:
    """Tests for BackgroundTasks."""

    async def test_close_stops_loops_promptly(self) -> None:
        """A loop sleeping between iterations wakes on the stop event."""
        tasks = BackgroundTasks()
        loop = tasks.loop("slow", Counter(), interval=60)
        await loop.sync(1, timeout=5)

        async with asyncio.timeout(1):
            await tasks.close()

        assert loop.done
        assert tasks.stop_event.is_set()

    async def test_close_cancels_running_tasks(self) -> None:
        tasks = BackgroundTasks()
        task = tasks.spawn("sleeper", asyncio.sleep(60))
        await asyncio.sleep(0)

        await tasks.close()

        assert task.cancelled()

    async def test_spawned_failure_goes_to_queue(self) -> None:
        tasks = BackgroundTasks()

        async def explode() -> None:
            raise RuntimeError("observer crashed")

        await tasks.spawn("observer", explode())

        with pytest.raises(RuntimeError, match="observer crashed"):
            tasks.check()
        tasks.check()

    async def test_check_without_errors(self) -> None:
        BackgroundTasks().check()

    async def test_supervisor_closes_group(self) -> None:
        """Registering with a supervisor ties the loops to the test's teardown."""
        supervisor = Supervisor()
        tasks = BackgroundTasks(supervisor)
        loop = tasks.loop("bound", Counter(), interval=60)
        await loop.sync(1, timeout=5)

        await supervisor.close()

        assert loop.done
