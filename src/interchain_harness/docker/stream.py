"""
Docker multiplexed stream decoding.

When a container or exec session runs without a TTY, the engine interleaves
stdout and stderr on one connection using fixed 8-byte frame headers.

Frame format:
    [stream:1][reserved:3][length:4][payload:N]

    stream: 0 = stdin, 1 = stdout, 2 = stderr
    reserved: Always zero
    length: Payload size, big-endian

References:
    - https://docs.docker.com/engine/api/v1.43/#tag/Container/operation/ContainerAttach
"""

from __future__ import annotations

import struct
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Final

HEADER_SIZE: Final[int] = 8
"""Fixed header size in bytes."""


class StreamType(IntEnum):
    """Origin of a frame's payload."""

    STDIN = 0
    STDOUT = 1
    STDERR = 2


class StreamFormatError(Exception):
    """Raised when a multiplexed stream is malformed."""


@dataclass(frozen=True, slots=True)
class StreamFrame:
    """A single frame of a multiplexed stream."""

    stream: StreamType
    """Which output the payload belongs to."""

    data: bytes
    """Frame payload."""

    def encode(self) -> bytes:
        """Encode the frame to wire format."""
        return struct.pack(">BxxxI", self.stream, len(self.data)) + self.data


@dataclass(slots=True)
class FrameDecoder:
    """
    Incremental decoder for multiplexed streams.

    Chunks from an HTTP body arrive at arbitrary boundaries. The decoder keeps
    partial frames buffered until their payload is complete.
    """

    _buffer: bytearray = field(default_factory=bytearray)
    """Bytes received but not yet consumed as a frame."""

    def feed(self, chunk: bytes) -> Iterator[StreamFrame]:
        """
        Add bytes and yield every frame that is now complete.

        Raises:
            StreamFormatError: If a header names an unknown stream.
        """
        self._buffer.extend(chunk)

        while len(self._buffer) >= HEADER_SIZE:
            stream_id, length = struct.unpack(">BxxxI", self._buffer[:HEADER_SIZE])
            if stream_id not in (0, 1, 2):
                raise StreamFormatError(f"Unknown stream id {stream_id} in frame header")

            end = HEADER_SIZE + length
            if len(self._buffer) < end:
                return

            data = bytes(self._buffer[HEADER_SIZE:end])
            del self._buffer[:end]
            yield StreamFrame(stream=StreamType(stream_id), data=data)

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet forming a complete frame."""
        return len(self._buffer)


def demultiplex(raw: bytes) -> tuple[bytes, bytes]:
    """
    Split a complete multiplexed body into stdout and stderr.

    Args:
        raw: Entire response body.

    Returns:
        Tuple of (stdout, stderr).

    Raises:
        StreamFormatError: If the body ends inside a frame.
    """
    decoder = FrameDecoder()
    stdout = bytearray()
    stderr = bytearray()

    for frame in decoder.feed(raw):
        if frame.stream == StreamType.STDERR:
            stderr.extend(frame.data)
        else:
            stdout.extend(frame.data)

    if decoder.pending:
        raise StreamFormatError(f"Stream truncated: {decoder.pending} trailing bytes")

    return bytes(stdout), bytes(stderr)
