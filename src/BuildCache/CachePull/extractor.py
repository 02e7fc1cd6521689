# === NAVMAP v1 ===
# {
#   "module": "BuildCache.CachePull.extractor",
#   "purpose": "Invoke the external tar archiver on streamed or materialised cache archives",
#   "sections": [
#     {"id": "archiver", "name": "Archiver", "anchor": "class-archiver", "kind": "class"},
#     {"id": "tararchiver", "name": "TarArchiver", "anchor": "class-tararchiver", "kind": "class"},
#     {"id": "restore-timestamps", "name": "restore_timestamps", "anchor": "function-restore-timestamps", "kind": "function"},
#     {"id": "relocate-cache-contents", "name": "relocate_cache_contents", "anchor": "function-relocate-cache-contents", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""External archiver integration for cache restoration.

Physical extraction (tree walking, permissions, symlinks) is delegated to
``tar``. Cache archives store absolute paths, so the archiver runs with
``-P`` and restores entries in place; permissions are kept with ``-p``.

In stream mode the archive is piped into ``tar``'s stdin from the calling
thread while a daemon thread drains tar's combined output, so a chatty
archiver can never block on a full pipe while we are still writing.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tarfile
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Deque, List, Optional, Protocol, Sequence

from .archive_info import CacheInfo
from .errors import ExtractionFailure

__all__ = [
    "Archiver",
    "RelocationSummary",
    "TarArchiver",
    "relocate_cache_contents",
    "restore_timestamps",
]

LOGGER = logging.getLogger("BuildCache.CachePull.extractor")

_COPY_CHUNK = 1 << 20
_OUTPUT_TAIL_LINES = 50


class Archiver(Protocol):
    """Capability that restores a tar archive onto the filesystem."""

    def extract_stream(self, stream: BinaryIO, *, compressed: bool) -> None:
        """Extract an archive read from ``stream``."""

    def extract_file(self, path: Path, *, compressed: bool) -> None:
        """Extract an archive stored at ``path``."""


def _drain_output(stdout, tail: Deque[str]) -> None:
    for raw in iter(stdout.readline, b""):
        line = raw.decode("utf-8", errors="replace").rstrip()
        if line:
            tail.append(line)


class TarArchiver:
    """Runs ``tar`` to restore cache archives.

    Args:
        executable: Name or path of the tar binary.
        directory: Working directory for extraction (``-C``); only used by
            the relocating layout, in-place archives carry absolute paths.
        logger: Logger for command tracing.
    """

    def __init__(
        self,
        executable: str = "tar",
        *,
        directory: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.executable = executable
        self.directory = directory
        self._logger = logger or LOGGER

    def build_command(self, source: str, *, compressed: bool) -> List[str]:
        flags = "-xpPzf" if compressed else "-xpPf"
        command = [self.executable, flags, source]
        if self.directory is not None:
            command.extend(["-C", str(self.directory)])
        return command

    def extract_stream(self, stream: BinaryIO, *, compressed: bool) -> None:
        command = self.build_command("-", compressed=compressed)
        self._run(command, stream)

    def extract_file(self, path: Path, *, compressed: bool) -> None:
        command = self.build_command(str(path), compressed=compressed)
        self._run(command, None)

    def _run(self, command: Sequence[str], stream: Optional[BinaryIO]) -> None:
        self._logger.debug("running archiver", extra={"stage": "extract", "command": list(command)})
        try:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.PIPE if stream is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            raise ExtractionFailure(
                f"Failed to launch {command[0]}: {exc}", command=command
            ) from exc

        tail: Deque[str] = deque(maxlen=_OUTPUT_TAIL_LINES)
        drainer = threading.Thread(
            target=_drain_output, args=(proc.stdout, tail), name="CachePullTarOutput", daemon=True
        )
        drainer.start()

        feed_error: Optional[BaseException] = None
        try:
            if stream is not None:
                feed_error = self._feed(stream, proc.stdin)
        finally:
            returncode = proc.wait()
            drainer.join()
            proc.stdout.close()

        output = "\n".join(tail)
        if returncode != 0:
            raise ExtractionFailure(
                f"{' '.join(command)} failed (exit {returncode}): {output or 'no output'}",
                command=command,
                returncode=returncode,
                output=output,
            )
        if feed_error is not None:
            raise ExtractionFailure(
                f"{' '.join(command)} failed: could not stream archive: {feed_error}",
                command=command,
                returncode=returncode,
                output=output,
            ) from feed_error

    @staticmethod
    def _feed(stream: BinaryIO, stdin) -> Optional[BaseException]:
        """Copy ``stream`` into the archiver's stdin, returning the first I/O error."""

        error: Optional[BaseException] = None
        try:
            while True:
                chunk = stream.read(_COPY_CHUNK)
                if not chunk:
                    break
                stdin.write(chunk)
        except Exception as exc:
            error = exc
        finally:
            try:
                stdin.close()
            except OSError as exc:
                error = error or exc
        return error


def _access_time(member: tarfile.TarInfo) -> float:
    atime = member.pax_headers.get("atime")
    if atime is not None:
        try:
            return float(atime)
        except ValueError:
            pass
    return member.mtime


def restore_timestamps(archive_path: Path, *, logger: Optional[logging.Logger] = None) -> int:
    """Reapply access and modification times recorded in ``archive_path``.

    The access time comes from the PAX ``atime`` header when present and
    falls back to the modification time.

    Returns:
        Number of entries whose timestamps were updated.
    """

    log = logger or LOGGER
    updated = 0
    with tarfile.open(archive_path, mode="r:*") as archive:
        for member in archive:
            if not (member.isdir() or member.isreg() or member.islnk() or member.issym()):
                continue
            target = member.name.rstrip("/") if member.isdir() else member.name
            times = (_access_time(member), member.mtime)
            try:
                if member.issym():
                    os.utime(target, times, follow_symlinks=False)
                else:
                    os.utime(target, times)
            except (OSError, NotImplementedError) as exc:
                log.debug(
                    "failed to restore timestamp",
                    extra={"stage": "extract", "path": target, "error": str(exc)},
                )
                continue
            updated += 1
    return updated


@dataclass
class RelocationSummary:
    moved: List[str] = field(default_factory=list)
    merged: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def relocate_cache_contents(
    staging_root: Path,
    cache_info: CacheInfo,
    *,
    logger: Optional[logging.Logger] = None,
) -> RelocationSummary:
    """Move entries of a relocatable archive from ``staging_root`` into place.

    Existing destinations are merged (copied over); missing ones are moved,
    creating parent directories first. A failing item is logged and skipped.
    """

    log = logger or LOGGER
    summary = RelocationSummary()
    for item in cache_info.contents:
        source = staging_root / item.relative_path_in_archive
        target = Path(item.destination_path)
        try:
            if target.exists():
                if source.is_dir():
                    shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
                else:
                    shutil.copy2(source, target, follow_symlinks=False)
                summary.merged.append(str(target))
                log.info(
                    "merged cache item",
                    extra={"stage": "relocate", "source": str(source), "target": str(target)},
                )
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(source), str(target))
                summary.moved.append(str(target))
                log.info(
                    "moved cache item",
                    extra={"stage": "relocate", "source": str(source), "target": str(target)},
                )
        except OSError as exc:
            summary.failed.append(str(target))
            log.warning(
                "failed to relocate cache item",
                extra={
                    "stage": "relocate",
                    "source": str(source),
                    "target": str(target),
                    "error": str(exc),
                },
            )
    return summary
