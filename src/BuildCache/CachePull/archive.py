# === NAVMAP v1 ===
# {
#   "module": "BuildCache.CachePull.archive",
#   "purpose": "Sniff gzip compression and read the first tar entry of a streamed cache archive",
#   "sections": [
#     {"id": "containerview", "name": "ContainerView", "anchor": "class-containerview", "kind": "class"},
#     {"id": "firstentry", "name": "FirstEntry", "anchor": "class-firstentry", "kind": "class"},
#     {"id": "sniff-container", "name": "sniff_container", "anchor": "function-sniff-container", "kind": "function"},
#     {"id": "read-first-entry", "name": "read_first_entry", "anchor": "function-read-first-entry", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Container sniffing and first-entry access for streamed cache archives.

Cache archives are tar streams, optionally gzip-compressed. Neither fact is
advertised up front, so :func:`sniff_container` simply tries to open the
stream as gzip. Only the two magic bytes are consumed when that fails, and
they are recorded by a private :class:`~BuildCache.CachePull.replay.ReplayReader`
so the tar reader still sees them.

Every byte pulled through the view is also pulled through the caller's
stream, so callers that need the full archive later wrap the source in their
own ``ReplayReader`` first and rewind it once they are done here.
"""

from __future__ import annotations

import gzip
import logging
import posixpath
import tarfile
import zlib
from dataclasses import dataclass
from typing import BinaryIO, Optional

from .errors import ArchiveFormatError
from .replay import ReplayReader

__all__ = [
    "ARCHIVE_INFO_FILENAME",
    "ContainerView",
    "FirstEntry",
    "read_first_entry",
    "sniff_container",
]

ARCHIVE_INFO_FILENAME = "archive_info.json"

LOGGER = logging.getLogger("BuildCache.CachePull.archive")


@dataclass
class ContainerView:
    """Tar-level view of a cache archive stream.

    Attributes:
        compressed: ``True`` when the stream carries a gzip header.
        empty: ``True`` when no tar bytes are available at all.
        stream: Decompressed stream (or the raw stream) positioned at the
            first tar header.
    """

    compressed: bool
    empty: bool
    stream: BinaryIO


@dataclass
class FirstEntry:
    """Header and bounded payload of the first entry of a container."""

    name: str
    size: int
    kind: str
    payload: Optional[BinaryIO]

    @property
    def is_archive_info(self) -> bool:
        return posixpath.basename(self.name.rstrip("/")) == ARCHIVE_INFO_FILENAME

    def read_payload(self) -> bytes:
        """Return the entry's payload bytes.

        Raises:
            ArchiveFormatError: If the stream ends or is corrupt inside the entry.
        """
        if self.payload is None:
            return b""
        try:
            return self.payload.read()
        except (tarfile.TarError, EOFError, zlib.error, OSError) as exc:
            raise ArchiveFormatError(f"Failed to read {self.name}: {exc}") from exc


def _entry_kind(info: tarfile.TarInfo) -> str:
    if info.isdir():
        return "directory"
    if info.issym():
        return "symlink"
    if info.islnk():
        return "hardlink"
    if info.isreg():
        return "regular"
    return "other"


def sniff_container(stream: BinaryIO, *, logger: Optional[logging.Logger] = None) -> ContainerView:
    """Open ``stream`` as gzip when possible, otherwise as a plain tar stream.

    A stream that fails gzip header validation is not an error; it is read as
    an uncompressed tar stream instead.
    """

    log = logger or LOGGER
    sniffer = ReplayReader(stream, logger=log)

    log.debug("attempt to read archive as gzip", extra={"stage": "sniff"})
    compressed = gzip.GzipFile(fileobj=sniffer, mode="rb")
    try:
        head = compressed.peek(1)
    except gzip.BadGzipFile as exc:
        log.debug(
            "failed to open the archive as gzip, reading as tar",
            extra={"stage": "sniff", "error": str(exc)},
        )
        sniffer.rewind()
        return ContainerView(compressed=False, empty=False, stream=sniffer)
    except (EOFError, zlib.error) as exc:
        raise ArchiveFormatError(f"Corrupt gzip stream: {exc}") from exc

    if not head and sniffer.bytes_read == 0:
        log.debug("archive stream is empty", extra={"stage": "sniff"})
        sniffer.rewind()
        return ContainerView(compressed=False, empty=True, stream=sniffer)
    return ContainerView(compressed=True, empty=not head, stream=compressed)


def read_first_entry(view: ContainerView) -> Optional[FirstEntry]:
    """Read the first entry header of ``view`` without decoding its payload.

    Returns:
        The first entry with a payload reader bounded to its declared size,
        or ``None`` when the container holds no entries.

    Raises:
        ArchiveFormatError: If the first header cannot be parsed.
    """

    if view.empty:
        return None

    try:
        tar = tarfile.open(fileobj=view.stream, mode="r|")
        info = tar.next()
    except (tarfile.TarError, EOFError, zlib.error, OSError) as exc:
        raise ArchiveFormatError(f"Failed to read first archive entry: {exc}") from exc

    if info is None:
        return None

    payload = tar.extractfile(info) if info.isreg() else None
    return FirstEntry(name=info.name, size=info.size, kind=_entry_kind(info), payload=payload)
