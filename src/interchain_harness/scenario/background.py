"""
Background scenario tasks.

Scenarios sometimes run loops next to the main test body, for example an
arbitrage bot that watches pools and submits swaps. These loops share one
stop event bound to the test's lifetime and report fatal failures on a
run-scoped error queue the main body can check.

Ordering between a loop and the main body is explicit: BackgroundLoop.sync()
waits until the loop has completed further iterations, so assertions never
depend on sleeping long enough.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from interchain_harness import config
from interchain_harness.errors import HarnessError, HarnessTimeoutError
from interchain_harness.lifecycle import Supervisor

logger = logging.getLogger(__name__)

LoopBody = Callable[[], Awaitable[None]]


class BackgroundLoop:
    """
    A body run repeatedly until the shared stop event is set.

    Harness errors raised by the body are transient: they are logged and the
    loop continues. Any other exception is fatal: it ends the loop and is
    pushed to the error queue.
    """

    def __init__(
        self,
        name: str,
        body: LoopBody,
        interval: float,
        stop_event: asyncio.Event,
        errors: asyncio.Queue[BaseException],
    ) -> None:
        self.name = name
        self.body = body
        self.interval = interval
        self.iterations = 0
        """Completed iterations, successful or not."""

        self.error: BaseException | None = None
        self._stop_event = stop_event
        self._errors = errors
        self._progress = asyncio.Condition()
        self.task: asyncio.Task[None] | None = None

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    async def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.body()
            except HarnessError as exc:
                logger.warning("Background loop %s: %s", self.name, exc)
            except Exception as exc:
                logger.error("Background loop %s failed: %s", self.name, exc)
                self.error = exc
                await self._errors.put(exc)
                async with self._progress:
                    self._progress.notify_all()
                return

            async with self._progress:
                self.iterations += 1
                self._progress.notify_all()

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except TimeoutError:
                continue

    async def sync(self, iterations: int = 1, timeout: float = config.BLOCK_WAIT_TIMEOUT) -> int:
        """
        Barrier: wait until the loop completes `iterations` more iterations.

        Returns:
            The loop's iteration count afterwards.

        Raises:
            HarnessTimeoutError: If the loop did not progress in time.
            Exception: The loop's fatal error, if it died.
        """
        target = self.iterations + iterations

        def reached() -> bool:
            return self.iterations >= target or self.error is not None or self.done

        try:
            async with asyncio.timeout(timeout):
                async with self._progress:
                    await self._progress.wait_for(reached)
        except TimeoutError as exc:
            raise HarnessTimeoutError(
                f"background loop {self.name} stuck at iteration {self.iterations}",
                component="scenario",
                subject=self.name,
            ) from exc

        if self.error is not None:
            raise self.error
        if self.iterations < target:
            raise HarnessTimeoutError(
                f"background loop {self.name} stopped at iteration {self.iterations}",
                component="scenario",
                subject=self.name,
            )
        return self.iterations


class BackgroundTasks:
    """
    Detached tasks bound to one test.

    Closing sets the stop event, cancels what is still running, and waits for
    every task, so nothing outlives the supervisor that owns this group.
    """

    def __init__(self, supervisor: Supervisor | None = None) -> None:
        self.stop_event = asyncio.Event()
        self.errors: asyncio.Queue[BaseException] = asyncio.Queue()
        self._tasks: list[asyncio.Task[None]] = []
        if supervisor is not None:
            supervisor.register("background tasks", self.close)

    def loop(self, name: str, body: LoopBody, interval: float | None = None) -> BackgroundLoop:
        """Start running `body` every `interval` seconds."""
        if interval is None:
            interval = config.POLL_INTERVAL
        background = BackgroundLoop(name, body, interval, self.stop_event, self.errors)
        background.task = self.spawn(name, background.run())
        return background

    def spawn(self, name: str, coro: Awaitable[None]) -> asyncio.Task[None]:
        """Run a one-off coroutine; a failure other than cancellation goes to the error queue."""

        async def guarded() -> None:
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Background task %s failed: %s", name, exc)
                await self.errors.put(exc)

        task = asyncio.create_task(guarded(), name=name)
        self._tasks.append(task)
        return task

    def check(self) -> None:
        """Raise the first fatal error reported so far, if any."""
        try:
            error = self.errors.get_nowait()
        except asyncio.QueueEmpty:
            return
        raise error

    async def close(self) -> None:
        self.stop_event.set()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
