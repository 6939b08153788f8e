"""
Exception hierarchy for the harness.

Every error raised by the engine is a HarnessError carrying:

- kind: what went wrong, independent of the class that raised it
- component: which part of the engine noticed (broker, chain, relayer, ...)
- subject: the chain name or relayer path name involved, if any
- log_tail: the last lines of the relevant container log, if one exists

The underlying cause travels as the standard exception chain (`raise ... from`).
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum

LOG_TAIL_LINES = 100
"""Maximum number of container log lines attached to an error."""


class ErrorKind(Enum):
    """Classification of engine failures."""

    CONFIG_INVALID = "ConfigInvalid"
    IMAGE_UNAVAILABLE = "ImageUnavailable"
    RUNTIME_UNAVAILABLE = "RuntimeUnavailable"
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    READINESS = "Readiness"
    HEIGHT_STALLED = "HeightStalled"
    FUNDING_MISMATCH = "FundingMismatch"
    TX_REJECTED = "TxRejected"
    RELAYER_STUCK = "RelayerStuck"
    TIMEOUT = "Timeout"
    POLL_TIMEOUT = "PollTimeout"
    CLEANUP_PARTIAL = "CleanupPartial"
    INTERNAL = "Internal"


class HarnessError(Exception):
    """
    Base exception for all harness errors.

    Attributes:
        message: Human-readable error description.
        component: Engine component that raised the error.
        subject: Chain name or path name the error concerns.
        log_tail: Trailing container log lines, oldest first.
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        component: str = "engine",
        subject: str | None = None,
        log_tail: Sequence[str] = (),
    ) -> None:
        self.message = message
        self.component = component
        self.subject = subject
        self.log_tail = list(log_tail)[-LOG_TAIL_LINES:]
        super().__init__(message)

    def __str__(self) -> str:
        where = self.component if self.subject is None else f"{self.component}:{self.subject}"
        text = f"[{self.kind.value}] {where}: {self.message}"
        if self.log_tail:
            text += "\n--- container log tail ---\n" + "\n".join(self.log_tail)
        return text

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, subject={self.subject!r})"


class ConfigInvalidError(HarnessError):
    """Descriptor, topology, or option validation failed."""

    kind = ErrorKind.CONFIG_INVALID


class UnknownFamilyError(ConfigInvalidError):
    """A descriptor names a chain family or built-in chain the factory does not know."""


class ImageUnavailableError(HarnessError):
    """A container image reference is missing, malformed, or cannot be pulled."""

    kind = ErrorKind.IMAGE_UNAVAILABLE


class RuntimeUnavailableError(HarnessError):
    """The container runtime cannot be reached."""

    kind = ErrorKind.RUNTIME_UNAVAILABLE


class NotFoundError(HarnessError):
    """The container runtime does not know the requested object."""

    kind = ErrorKind.NOT_FOUND


class ConflictError(HarnessError):
    """The container runtime refused an operation because of a name or state conflict."""

    kind = ErrorKind.CONFLICT


class ReadinessError(HarnessError):
    """A node failed to reach its initial height before the readiness deadline."""

    kind = ErrorKind.READINESS


class HeightStalledError(HarnessError):
    """A chain stopped producing blocks while a caller waited on it."""

    kind = ErrorKind.HEIGHT_STALLED


class FundingMismatchError(HarnessError):
    """A freshly funded user does not hold exactly the requested amount."""

    kind = ErrorKind.FUNDING_MISMATCH


class TxRejectedError(HarnessError):
    """A transaction was refused by the node or failed on-chain."""

    kind = ErrorKind.TX_REJECTED


class RelayerStuckError(HarnessError):
    """A relayer path transition failed."""

    kind = ErrorKind.RELAYER_STUCK


class HarnessTimeoutError(HarnessError, TimeoutError):
    """An operation exceeded its deadline. State is left for the supervisor to clean."""

    kind = ErrorKind.TIMEOUT


class PollTimeoutError(HarnessTimeoutError):
    """A balance poll saw no change before its deadline."""

    kind = ErrorKind.POLL_TIMEOUT


class CleanupPartialError(HarnessError):
    """
    Raised when one or more cleanup steps failed.

    Attributes:
        errors: Every failure collected while closing, in execution order.
    """

    kind = ErrorKind.CLEANUP_PARTIAL

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        summary = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(
            f"{len(self.errors)} cleanup step(s) failed: {summary}",
            component="supervisor",
        )


class BuildError(HarnessError):
    """
    Aggregate of the failures that aborted an interchain build.

    The kind is that of the first underlying error so callers can branch on it
    without unpacking the list.

    Attributes:
        errors: Every failure collected during the build step.
    """

    def __init__(self, errors: Sequence[HarnessError]) -> None:
        if not errors:
            raise ValueError("BuildError requires at least one error")
        self.errors = list(errors)
        self.kind = self.errors[0].kind
        first = self.errors[0]
        super().__init__(
            "; ".join(str(e).split("\n", 1)[0] for e in self.errors),
            component="interchain",
            subject=first.subject,
            log_tail=first.log_tail,
        )


def aggregate(errors: Sequence[BaseException], component: str) -> HarnessError:
    """
    Collapse errors from concurrent steps into one HarnessError.

    Foreign exceptions are wrapped so the kind is always known.
    A single error is returned as-is, several become a BuildError.
    """
    wrapped: list[HarnessError] = []
    for error in errors:
        if isinstance(error, BuildError):
            wrapped.extend(error.errors)
        elif isinstance(error, HarnessError):
            wrapped.append(error)
        else:
            harness_error = HarnessError(f"{type(error).__name__}: {error}", component=component)
            harness_error.__cause__ = error
            wrapped.append(harness_error)

    if len(wrapped) == 1:
        return wrapped[0]
    return BuildError(wrapped)


def flatten_exception_group(group: BaseExceptionGroup) -> list[BaseException]:
    """Return the leaf exceptions of a (possibly nested) exception group."""
    leaves: list[BaseException] = []
    for exc in group.exceptions:
        if isinstance(exc, BaseExceptionGroup):
            leaves.extend(flatten_exception_group(exc))
        else:
            leaves.append(exc)
    return leaves
