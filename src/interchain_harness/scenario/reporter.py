"""
JSON-lines test reports.

A Reporter appends one JSON object per event to a report file: tests
starting and finishing, and every command a relayer ran. Reports are for
humans debugging a failed run; nothing in the harness reads them back.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Literal

from pydantic import Field

from interchain_harness.types import CamelModel

logger = logging.getLogger(__name__)


class ReportRecord(CamelModel):
    """One line of a report."""

    type: str
    test_name: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LifecycleRecord(ReportRecord):
    type: Literal["test_started", "test_finished"]
    failed: bool = False
    error: str | None = None


class RelayerExecRecord(ReportRecord):
    type: Literal["relayer_exec"] = "relayer_exec"
    container_name: str
    command: list[str]
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    started_at: datetime
    finished_at: datetime
    error: str | None = None


class Reporter:
    """
    Appends report records to a file.

    Without a path the reporter only logs. Writes are serialized so concurrent
    relayers can share one reporter.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._file: IO[str] | None = None

    def write(self, record: ReportRecord) -> None:
        if self.path is None:
            return
        with self._lock:
            if self._file is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._file = self.path.open("a", encoding="utf-8")
            self._file.write(record.to_json_line())
            self._file.flush()

    def test_started(self, test_name: str) -> None:
        logger.info("Test %s started", test_name)
        self.write(LifecycleRecord(type="test_started", test_name=test_name))

    def test_finished(self, test_name: str, error: BaseException | None = None) -> None:
        if error is None:
            logger.info("Test %s passed", test_name)
        else:
            logger.info("Test %s failed: %s", test_name, error)
        self.write(
            LifecycleRecord(
                type="test_finished",
                test_name=test_name,
                failed=error is not None,
                error=None if error is None else str(error),
            )
        )

    def relayer_exec_reporter(self, test_name: str) -> RelayerExecReporter:
        return RelayerExecReporter(self, test_name)

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None


class RelayerExecReporter:
    """Records relayer commands for one test."""

    def __init__(self, reporter: Reporter | None, test_name: str) -> None:
        self.reporter = reporter
        self.test_name = test_name
        self.records: list[RelayerExecRecord] = []

    def track_relayer_exec(
        self,
        container_name: str,
        command: Sequence[str],
        *,
        stdout: str = "",
        stderr: str = "",
        exit_code: int | None = None,
        started_at: datetime,
        finished_at: datetime,
        error: BaseException | None = None,
    ) -> None:
        record = RelayerExecRecord(
            test_name=self.test_name,
            container_name=container_name,
            command=list(command),
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            started_at=started_at,
            finished_at=finished_at,
            error=None if error is None else str(error),
        )
        self.records.append(record)
        if self.reporter is not None:
            self.reporter.write(record)
