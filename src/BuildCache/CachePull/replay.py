# === NAVMAP v1 ===
# {
#   "module": "BuildCache.CachePull.replay",
#   "purpose": "Record the first reads of a one-shot byte stream and replay them on demand",
#   "sections": [
#     {"id": "readermode", "name": "ReaderMode", "anchor": "class-readermode", "kind": "class"},
#     {"id": "replayreader", "name": "ReplayReader", "anchor": "class-replayreader", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Replayable reader over a single-pass byte stream.

HTTP response bodies and pipes cannot seek, yet the cache pipeline needs to
look at the head of the archive (compression sniff, first tar entry) and then
hand the *whole* stream to the archiver. :class:`ReplayReader` records what
has been read so far and, after :meth:`ReplayReader.rewind`, serves that
recording again before falling through to the live source.

Rewind policy:

* In ``RECORDING`` mode the snapshot is everything recorded since creation.
* In ``REPLAYING`` mode (snapshot not yet drained) the snapshot restarts from
  its first byte.
* In ``PASSTHROUGH`` mode the snapshot only holds the bytes pulled from the
  source by the call that drained the previous snapshot; the original history
  is gone.

The recording buffer restarts empty after every rewind, so the buffer never
holds more than one generation of data.

Examples:
    >>> import io
    >>> reader = ReplayReader(io.BytesIO(b"abcdef"))
    >>> reader.read(2)
    b'ab'
    >>> reader.rewind()
    >>> reader.read(4)
    b'abcd'
    >>> reader.mode
    <ReaderMode.PASSTHROUGH: 'passthrough'>
"""

from __future__ import annotations

import io
import logging
from enum import Enum
from typing import BinaryIO, Optional

__all__ = ["ReaderMode", "ReplayReader"]

LOGGER = logging.getLogger("BuildCache.CachePull.replay")


class ReaderMode(str, Enum):
    """Operating mode of a :class:`ReplayReader`."""

    RECORDING = "recording"
    REPLAYING = "replaying"
    PASSTHROUGH = "passthrough"


class ReplayReader(io.RawIOBase):
    """Raw binary reader that can replay its recorded prefix once per rewind.

    Args:
        source: Underlying byte stream. Ownership moves to the reader, so
            :meth:`close` closes it as well.
        logger: Logger used for read tracing at DEBUG level.

    If the source raises while a read is topping up a drained snapshot, the
    exception propagates and the replayed bytes of that call are not
    returned. Callers treat such errors as fatal for the stream.

    Attributes:
        bytes_read: Bytes returned to callers since creation or the last
            rewind, across every mode.
    """

    def __init__(self, source: BinaryIO, *, logger: Optional[logging.Logger] = None) -> None:
        super().__init__()
        self._source = source
        self._logger = logger or LOGGER
        self._mode = ReaderMode.RECORDING
        self._buffer = bytearray()
        self._snapshot = b""
        self._offset = 0
        self.bytes_read = 0

    @property
    def mode(self) -> ReaderMode:
        return self._mode

    @property
    def buffered(self) -> int:
        """Number of bytes currently held for a future rewind."""

        return len(self._buffer)

    def readable(self) -> bool:
        return True

    def rewind(self) -> None:
        """Replay the current snapshot from its start on the next reads."""

        if self._mode is ReaderMode.REPLAYING:
            snapshot = self._snapshot + bytes(self._buffer)
        else:
            snapshot = bytes(self._buffer)
        self._logger.debug(
            "rewinding reader",
            extra={"stage": "replay", "mode": self._mode.value, "snapshot_bytes": len(snapshot)},
        )
        self._snapshot = snapshot
        self._buffer = bytearray()
        self._offset = 0
        self.bytes_read = 0
        self._mode = ReaderMode.REPLAYING if snapshot else ReaderMode.PASSTHROUGH

    def readinto(self, b) -> int:
        view = memoryview(b).cast("B")
        wanted = len(view)
        if wanted == 0:
            return 0

        if self._mode is ReaderMode.RECORDING:
            data = self._read_source(wanted)
            self._buffer += data
        elif self._mode is ReaderMode.REPLAYING:
            data = self._read_replay(wanted)
        else:
            data = self._read_source(wanted)

        count = len(data)
        view[:count] = data
        self.bytes_read += count
        return count

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            return self.readall()
        return super().read(size)

    def readall(self) -> bytes:
        chunks = []
        while True:
            chunk = super().read(io.DEFAULT_BUFFER_SIZE)
            if not chunk:
                break
            chunks.append(chunk)
        return b"".join(chunks)

    def close(self) -> None:
        if not self.closed:
            try:
                close = getattr(self._source, "close", None)
                if close is not None:
                    close()
            finally:
                super().close()

    def _read_replay(self, wanted: int) -> bytes:
        end = min(self._offset + wanted, len(self._snapshot))
        data = self._snapshot[self._offset : end]
        self._offset = end
        if self._offset < len(self._snapshot):
            return data

        shortfall = wanted - len(data)
        self._logger.debug(
            "replay snapshot drained",
            extra={"stage": "replay", "replayed": len(data), "shortfall": shortfall},
        )
        self._mode = ReaderMode.PASSTHROUGH
        self._snapshot = b""
        self._offset = 0
        if shortfall == 0:
            return data
        extra = self._read_source(shortfall)
        self._buffer += extra
        return data + extra

    def _read_source(self, size: int) -> bytes:
        return bytes(self._source.read(size) or b"")
