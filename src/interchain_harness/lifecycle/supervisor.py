"""
Lifecycle supervisor.

Owns every resource created while building and running an interchain.
Resources are released in reverse creation order when the supervisor closes,
so a container is always removed before the network it is attached to.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from interchain_harness.errors import CleanupPartialError
from interchain_harness.metrics import registry as metrics

logger = logging.getLogger(__name__)

CleanupThunk = Callable[[], Awaitable[None]]
"""An async callable that releases exactly one resource."""


@dataclass(slots=True)
class _Entry:
    """One registered cleanup step."""

    description: str
    thunk: CleanupThunk


@dataclass(slots=True)
class Supervisor:
    """
    LIFO stack of cleanup thunks.

    Registration is cheap and synchronous so it can happen immediately after
    a resource is created, before the handle is handed to anyone else.

    Closing runs every thunk even when some fail. Failures are collected and
    raised together as a CleanupPartialError once the stack is empty.
    Closing twice is a no-op.
    """

    name: str = "interchain"
    """Label used in log output."""

    _stack: list[_Entry] = field(default_factory=list, repr=False)
    """Registered cleanup steps, oldest first."""

    _closed: bool = field(default=False, repr=False)
    """Whether close() has completed."""

    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    """Serializes concurrent close() calls."""

    @property
    def closed(self) -> bool:
        """Whether the supervisor has already released its resources."""
        return self._closed

    def __len__(self) -> int:
        return len(self._stack)

    def register(self, description: str, thunk: CleanupThunk) -> None:
        """
        Push a cleanup step.

        Args:
            description: Human-readable label used when the step fails.
            thunk: Async callable that releases the resource.

        Raises:
            RuntimeError: If the supervisor is already closed. Resources created
                after close would otherwise leak.
        """
        if self._closed:
            raise RuntimeError(f"Supervisor {self.name} is closed; cannot register {description}")
        self._stack.append(_Entry(description=description, thunk=thunk))

    async def close(self) -> None:
        """
        Run every cleanup step in LIFO order.

        Raises:
            CleanupPartialError: If at least one step failed. All steps ran.
        """
        async with self._lock:
            if self._closed:
                return

            errors: list[BaseException] = []
            while self._stack:
                entry = self._stack.pop()
                try:
                    await entry.thunk()
                except Exception as exc:
                    logger.warning("Cleanup step '%s' failed: %s", entry.description, exc)
                    metrics.cleanup_failures.inc()
                    exc.add_note(f"while cleaning up: {entry.description}")
                    errors.append(exc)

            self._closed = True
            logger.debug("Supervisor %s closed (%d failure(s))", self.name, len(errors))

            if errors:
                raise CleanupPartialError(errors)
