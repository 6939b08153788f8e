"""
Block database.

Optional SQLite store of the blocks each chain produced during a run.
"""

from .blocks import BlockDatabase, BlockRecord
from .collector import BlockCollector

__all__ = [
    "BlockCollector",
    "BlockDatabase",
    "BlockRecord",
]
