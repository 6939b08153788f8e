"""Run-scoped, append-only log files."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from interchain_harness import config
from interchain_harness.docker import slugify
from interchain_harness.lifecycle import Supervisor


class LogSink:
    """
    An append-only text file safe for concurrent writers.

    Container log streams and scenario code write whole lines; each write
    is atomic with respect to the others.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        path.parent.mkdir(parents=True, exist_ok=True)
        self._file: IO[str] | None = path.open("a", encoding="utf-8")

    @property
    def closed(self) -> bool:
        return self._file is None

    def write(self, text: str) -> None:
        """
        Append text, terminated by a newline.

        Raises:
            ValueError: If the sink is closed.
        """
        if not text.endswith("\n"):
            text += "\n"
        with self._lock:
            if self._file is None:
                raise ValueError(f"log sink {self.path} is closed")
            self._file.write(text)
            self._file.flush()

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    async def aclose(self) -> None:
        self.close()


def create_log_file(
    name: str, supervisor: Supervisor | None = None, directory: Path | None = None
) -> LogSink:
    """
    Open a new log file named after `name` and the current time.

    When a supervisor is given the file is closed on teardown.
    """
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")
    sink = LogSink((directory or config.LOG_DIR) / f"{slugify(name)}-{stamp}.log")
    if supervisor is not None:
        supervisor.register(f"log file {sink.path.name}", sink.aclose)
    return sink
