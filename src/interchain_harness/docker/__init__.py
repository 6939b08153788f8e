"""
Container broker.

Talks to the Docker Engine API and owns the lifecycle of every network,
volume and container used by an interchain.
"""

from .broker import (
    TEST_LABEL,
    ContainerBroker,
    ContainerHandle,
    ExecResult,
    LineSink,
    Mount,
    slugify,
    split_reference,
)
from .client import DockerClient
from .stream import StreamFormatError, StreamFrame, StreamType, demultiplex

__all__ = [
    "TEST_LABEL",
    "ContainerBroker",
    "ContainerHandle",
    "DockerClient",
    "ExecResult",
    "LineSink",
    "Mount",
    "StreamFormatError",
    "StreamFrame",
    "StreamType",
    "demultiplex",
    "slugify",
    "split_reference",
]
