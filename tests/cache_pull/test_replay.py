"""Tests for the replayable reader.

Tests verify:
- Recorded prefixes are replayed ahead of the live source
- Replay shortfalls are filled with a single source read
- The rewind policy in each mode
- Byte accounting and error propagation
"""

from __future__ import annotations

import io

import pytest
from hypothesis import given, settings, strategies as st

from BuildCache.CachePull.replay import ReaderMode, ReplayReader
from BuildCache.CachePull.testing import ShortReadStream


class _FailingStream(io.RawIOBase):
    def __init__(self, data: bytes) -> None:
        super().__init__()
        self._data = io.BytesIO(data)

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        chunk = self._data.read(len(b))
        if not chunk:
            raise OSError("connection reset by peer")
        b[: len(chunk)] = chunk
        return len(chunk)


class TestRecordAndReplay:
    def test_starts_recording(self):
        reader = ReplayReader(io.BytesIO(b"abcdef"))
        assert reader.mode is ReaderMode.RECORDING
        assert reader.read(3) == b"abc"
        assert reader.buffered == 3

    def test_rewind_serves_recorded_prefix_then_source(self):
        reader = ReplayReader(io.BytesIO(b"abcdef"))
        reader.read(3)
        reader.rewind()
        assert reader.mode is ReaderMode.REPLAYING
        assert reader.read(10) == b"abcdef"
        assert reader.mode is ReaderMode.PASSTHROUGH

    def test_shortfall_spans_replay_and_source_in_one_call(self):
        reader = ReplayReader(io.BytesIO(b"abcdef"))
        reader.read(3)
        reader.rewind()
        assert reader.read(2) == b"ab"
        assert reader.mode is ReaderMode.REPLAYING
        assert reader.read(2) == b"cd"
        assert reader.mode is ReaderMode.PASSTHROUGH
        assert reader.read(2) == b"ef"
        assert reader.read(2) == b""

    def test_exact_drain_switches_to_passthrough_without_source_read(self):
        source = ShortReadStream(b"abcdef", chunk=3)
        reader = ReplayReader(source)
        reader.read(3)
        reads_before = source.reads
        reader.rewind()
        assert reader.read(3) == b"abc"
        assert source.reads == reads_before
        assert reader.mode is ReaderMode.PASSTHROUGH

    def test_passthrough_does_not_record(self):
        reader = ReplayReader(io.BytesIO(b"abcdef"))
        reader.rewind()
        assert reader.mode is ReaderMode.PASSTHROUGH
        assert reader.read() == b"abcdef"
        assert reader.buffered == 0

    def test_read_all_after_rewind_returns_whole_stream(self):
        payload = bytes(range(256)) * 100
        reader = ReplayReader(io.BytesIO(payload))
        reader.read(1000)
        reader.rewind()
        assert reader.read() == payload


class TestRewindPolicy:
    def test_rewind_while_replaying_restarts_snapshot(self):
        reader = ReplayReader(io.BytesIO(b"abcdef"))
        reader.read(4)
        reader.rewind()
        assert reader.read(2) == b"ab"
        reader.rewind()
        assert reader.read(4) == b"abcd"
        assert reader.read(4) == b"ef"

    def test_second_rewind_after_drain_replays_only_shortfall(self):
        reader = ReplayReader(io.BytesIO(b"abcdef"))
        reader.read(3)
        reader.rewind()
        assert reader.read(5) == b"abcde"
        assert reader.buffered == 2

        reader.rewind()
        assert reader.read(10) == b"def"

    def test_buffer_restarts_empty_after_rewind(self):
        reader = ReplayReader(io.BytesIO(b"abcdef"))
        reader.read(4)
        reader.rewind()
        assert reader.buffered == 0


class TestByteAccounting:
    def test_bytes_read_counts_every_mode(self):
        reader = ReplayReader(io.BytesIO(b"abcdef"))
        reader.read(2)
        assert reader.bytes_read == 2
        reader.rewind()
        assert reader.bytes_read == 0
        reader.read(4)
        reader.read(10)
        assert reader.bytes_read == 6

    def test_zero_length_read(self):
        reader = ReplayReader(io.BytesIO(b"abc"))
        assert reader.read(0) == b""
        assert reader.bytes_read == 0


class TestErrorsAndOwnership:
    def test_source_error_propagates_after_snapshot(self):
        reader = ReplayReader(_FailingStream(b"abc"))
        assert reader.read(3) == b"abc"
        reader.rewind()
        assert reader.read(3) == b"abc"
        with pytest.raises(OSError, match="connection reset"):
            reader.read(3)

    def test_source_error_during_shortfall_propagates(self):
        reader = ReplayReader(_FailingStream(b"abc"))
        reader.read(3)
        reader.rewind()
        with pytest.raises(OSError):
            reader.read(5)

    def test_close_closes_source(self):
        source = io.BytesIO(b"abc")
        with ReplayReader(source) as reader:
            reader.read(1)
        assert source.closed
        assert reader.closed


class TestReplayProperties:
    @given(
        payload=st.binary(max_size=4096),
        prefix=st.integers(min_value=0, max_value=4096),
        chunk=st.integers(min_value=1, max_value=97),
        read_size=st.integers(min_value=1, max_value=512),
    )
    @settings(max_examples=200)
    def test_rewind_then_read_reconstructs_stream(self, payload, prefix, chunk, read_size):
        """Bytes read before a rewind are delivered again followed by the rest."""
        reader = ReplayReader(ShortReadStream(payload, chunk=chunk))
        consumed = b""
        while len(consumed) < prefix:
            data = reader.read(min(read_size, prefix - len(consumed)))
            if not data:
                break
            consumed += data
        assert payload.startswith(consumed)

        reader.rewind()
        replayed = b""
        while True:
            data = reader.read(read_size)
            if not data:
                break
            replayed += data
        assert replayed == payload
        assert reader.bytes_read == len(payload)
