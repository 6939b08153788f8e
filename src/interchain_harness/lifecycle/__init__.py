"""Resource ownership and guaranteed teardown."""

from .supervisor import CleanupThunk, Supervisor

__all__ = [
    "CleanupThunk",
    "Supervisor",
]
