"""Testing utilities for exercising cache pulls without a network or ``tar``.

Provides archive builders producing the layouts written by the cache push
step, a recording archiver double, a provider serving in-memory archives and
a helper that installs an ``httpx.MockTransport``-backed shared client.
"""

from __future__ import annotations

import contextlib
import gzip
import io
import json
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import httpx

from ..archive import ARCHIVE_INFO_FILENAME
from ..errors import DownloadFailure, ExtractionFailure

__all__ = [
    "FakeProvider",
    "RecordingArchiver",
    "ShortReadStream",
    "build_archive",
    "build_cache_archive",
    "use_mock_http_client",
]


@contextlib.contextmanager
def use_mock_http_client(transport: httpx.BaseTransport, **client_kwargs) -> Iterator[httpx.Client]:
    """Temporarily install an HTTPX client backed by ``transport``."""

    from ..net import configure_http_client, reset_http_client

    client = httpx.Client(transport=transport, **client_kwargs)
    configure_http_client(client=client)
    try:
        yield client
    finally:
        reset_http_client()
        client.close()


Member = Union[bytes, str, None]


def build_archive(
    members: Sequence[Tuple[str, Member]],
    *,
    compressed: bool = False,
    mtime: int = 1_600_000_000,
) -> bytes:
    """Return tar bytes containing ``members`` in order.

    Each member is ``(name, payload)``; a ``None`` payload adds a directory
    and a ``str`` payload is UTF-8 encoded.
    """

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for name, payload in members:
            info = tarfile.TarInfo(name)
            info.mtime = mtime
            if payload is None:
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
                continue
            data = payload.encode("utf-8") if isinstance(payload, str) else payload
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    raw = buffer.getvalue()
    if compressed:
        return gzip.compress(raw, mtime=0)
    return raw


def build_cache_archive(
    archive_info: Optional[Mapping[str, object]],
    files: Optional[Mapping[str, Member]] = None,
    *,
    compressed: bool = True,
) -> bytes:
    """Return a cache archive with ``archive_info.json`` as its first entry."""

    members: List[Tuple[str, Member]] = []
    if archive_info is not None:
        members.append((ARCHIVE_INFO_FILENAME, json.dumps(dict(archive_info))))
    members.extend((files or {}).items())
    return build_archive(members, compressed=compressed)


class ShortReadStream(io.RawIOBase):
    """Readable stream that never returns more than ``chunk`` bytes per call."""

    def __init__(self, data: bytes, chunk: int = 7) -> None:
        super().__init__()
        self._data = data
        self._chunk = chunk
        self._offset = 0
        self.reads = 0

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        view = memoryview(b).cast("B")
        self.reads += 1
        count = min(len(view), self._chunk, len(self._data) - self._offset)
        view[:count] = self._data[self._offset : self._offset + count]
        self._offset += count
        return count


@dataclass
class ExtractionCall:
    mode: str
    compressed: bool
    data: bytes = b""
    path: Optional[Path] = None


@dataclass
class RecordingArchiver:
    """Archiver double that records what it was asked to extract.

    Attributes:
        fail_stream: Raise :class:`ExtractionFailure` from stream extraction.
        fail_file: Raise :class:`ExtractionFailure` from file extraction.
    """

    fail_stream: bool = False
    fail_file: bool = False
    calls: List[ExtractionCall] = field(default_factory=list)

    def extract_stream(self, stream, *, compressed: bool) -> None:
        data = stream.read()
        self.calls.append(ExtractionCall("stream", compressed, data=data))
        if self.fail_stream:
            raise ExtractionFailure("tar: Unexpected EOF in archive", returncode=2)

    def extract_file(self, path: Path, *, compressed: bool) -> None:
        data = Path(path).read_bytes()
        self.calls.append(ExtractionCall("file", compressed, data=data, path=Path(path)))
        if self.fail_file:
            raise ExtractionFailure("tar: Error is not recoverable", returncode=2)


class FakeProvider:
    """Stream provider serving archives from memory, keyed by URI."""

    def __init__(self, archives: Dict[str, bytes], *, chunk: Optional[int] = None) -> None:
        self.archives = dict(archives)
        self.chunk = chunk
        self.opened: List[str] = []
        self.materialized: List[Tuple[str, Path]] = []
        self.streams: List[io.RawIOBase] = []

    @contextlib.contextmanager
    def open(self, uri: str) -> Iterator[io.RawIOBase]:
        if uri not in self.archives:
            raise DownloadFailure(f"no archive at {uri}", status_code=404)
        self.opened.append(uri)
        data = self.archives[uri]
        stream: io.RawIOBase
        stream = ShortReadStream(data, self.chunk) if self.chunk else io.BytesIO(data)
        self.streams.append(stream)
        with stream:
            yield stream

    def materialize(self, uri: str, destination: Path) -> Tuple[Path, int]:
        if uri not in self.archives:
            raise DownloadFailure(f"no archive at {uri}", status_code=404)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.archives[uri])
        self.materialized.append((uri, destination))
        return destination, len(self.archives[uri])
