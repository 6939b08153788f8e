"""Tests for Docker multiplexed stream decoding."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from interchain_harness.docker import StreamFormatError, StreamFrame, StreamType, demultiplex
from interchain_harness.docker.stream import HEADER_SIZE, FrameDecoder


class TestStreamFrame:
    """Tests for frame encoding."""

    def test_header_layout(self) -> None:
        """Stream id, three zero bytes, big-endian length."""
        encoded = StreamFrame(StreamType.STDERR, b"hello").encode()

        assert encoded[:HEADER_SIZE] == b"\x02\x00\x00\x00\x00\x00\x00\x05"
        assert encoded[HEADER_SIZE:] == b"hello"


class TestFrameDecoder:
    """Tests for incremental decoding."""

    def test_partial_frames_are_buffered(self) -> None:
        """A frame split across chunks is yielded once complete."""
        encoded = StreamFrame(StreamType.STDOUT, b"abcdef").encode()
        decoder = FrameDecoder()

        assert list(decoder.feed(encoded[:5])) == []
        assert list(decoder.feed(encoded[5:10])) == []
        assert decoder.pending == 10

        frames = list(decoder.feed(encoded[10:]))

        assert frames == [StreamFrame(StreamType.STDOUT, b"abcdef")]
        assert decoder.pending == 0

    def test_unknown_stream_id_is_rejected(self) -> None:
        """Only stdin, stdout and stderr exist."""
        decoder = FrameDecoder()

        with pytest.raises(StreamFormatError, match="Unknown stream id 7"):
            list(decoder.feed(b"\x07\x00\x00\x00\x00\x00\x00\x00"))

    @given(
        st.lists(
            st.tuples(st.sampled_from([StreamType.STDOUT, StreamType.STDERR]), st.binary()),
            max_size=8,
        ),
        st.integers(min_value=1, max_value=16),
    )
    def test_any_chunking_yields_the_same_frames(
        self, frames: list[tuple[StreamType, bytes]], chunk_size: int
    ) -> None:
        """Chunk boundaries never change what is decoded."""
        raw = b"".join(StreamFrame(stream, data).encode() for stream, data in frames)
        decoder = FrameDecoder()

        decoded = []
        for start in range(0, len(raw), chunk_size):
            decoded.extend(decoder.feed(raw[start : start + chunk_size]))

        assert [(f.stream, f.data) for f in decoded] == frames
        assert decoder.pending == 0


class TestDemultiplex:
    """Tests for splitting a complete body."""

    def test_interleaved_output_is_split(self) -> None:
        """Stdout and stderr are concatenated separately, in order."""
        raw = b"".join(
            [
                StreamFrame(StreamType.STDOUT, b"one ").encode(),
                StreamFrame(StreamType.STDERR, b"warn").encode(),
                StreamFrame(StreamType.STDOUT, b"two").encode(),
            ]
        )

        assert demultiplex(raw) == (b"one two", b"warn")

    def test_empty_body(self) -> None:
        """No output at all is valid."""
        assert demultiplex(b"") == (b"", b"")

    def test_truncated_body_is_rejected(self) -> None:
        """A body ending inside a frame is an error."""
        raw = StreamFrame(StreamType.STDOUT, b"abcdef").encode()[:-2]

        with pytest.raises(StreamFormatError, match="truncated"):
            demultiplex(raw)
