# === NAVMAP v1 ===
# {
#   "module": "BuildCache.CachePull.pipeline",
#   "purpose": "Drive a cache pull from stream sniffing through gating, extraction and fallback",
#   "sections": [
#     {"id": "pullstate", "name": "PullState", "anchor": "class-pullstate", "kind": "class"},
#     {"id": "pullresult", "name": "PullResult", "anchor": "class-pullresult", "kind": "class"},
#     {"id": "streamprovider", "name": "StreamProvider", "anchor": "class-streamprovider", "kind": "class"},
#     {"id": "cachepullpipeline", "name": "CachePullPipeline", "anchor": "class-cachepullpipeline", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Cache pull state machine.

``SNIFFING -> METADATA_CHECK -> GATING -> EXTRACTING -> SUCCESS``, with
``SKIPPED`` as the normal exit for incompatible archives and ``FALLBACK``
taken when streaming extraction fails and a disk-buffered retry is allowed.

The provider stream is wrapped in one :class:`ReplayReader` for the whole
run. Sniffing and metadata inspection pull a bounded prefix through it, and
the reader is rewound exactly once before extraction so the archiver receives
the complete stream from its first byte.
"""

from __future__ import annotations

import logging
import tarfile
import time
from contextlib import ExitStack
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import ContextManager, Optional, Protocol, Tuple

from .archive import read_first_entry, sniff_container
from .archive_info import ArchiveInfo, parse_archive_info, parse_cache_info
from .compatibility import GateResult, check_compatibility
from .errors import ArchiveFormatError, DownloadFailure, ExtractionFailure
from .extractor import Archiver, relocate_cache_contents, restore_timestamps
from .logging_utils import redact_url
from .replay import ReplayReader
from .settings import DEFAULT_FALLBACK_ARCHIVE_PATH

__all__ = [
    "CACHE_INFO_FILENAME",
    "CachePullPipeline",
    "PullResult",
    "PullState",
    "StreamProvider",
]

LOGGER = logging.getLogger("BuildCache.CachePull.pipeline")

CACHE_INFO_FILENAME = "cache-info.json"


class PullState(str, Enum):
    SNIFFING = "sniffing"
    METADATA_CHECK = "metadata_check"
    GATING = "gating"
    EXTRACTING = "extracting"
    FALLBACK = "fallback"
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class StreamProvider(Protocol):
    """Source of cache archive bytes."""

    def open(self, uri: str) -> ContextManager:
        """Return a context manager yielding a single-pass binary stream."""

    def materialize(self, uri: str, destination: Path) -> Tuple[Path, int]:
        """Return a local copy of the archive and its size in bytes."""


@dataclass
class PullResult:
    """Observable outcome of :meth:`CachePullPipeline.run`."""

    state: PullState = PullState.SNIFFING
    compressed: bool = False
    archive_info: Optional[ArchiveInfo] = None
    gate: Optional[GateResult] = None
    bytes_read: int = 0
    fallback_used: bool = False
    fallback_archive_size: Optional[int] = None
    duration_sec: float = 0.0

    @property
    def skipped(self) -> bool:
        return self.state is PullState.SKIPPED


class CachePullPipeline:
    """Restores one cache archive into the local filesystem.

    Args:
        current: Archive info describing this environment.
        archiver: Capability that runs the physical extraction.
        provider: Opens and materialises archives by URI.
        stack_check: Whether to inspect and gate on the embedded metadata.
            Defaults to ``True`` when ``current`` carries a stack identifier.
        allow_fallback: Retry a failed streaming extraction from a local file.
        restore_timestamps: Reapply archive mtimes after a fallback extraction.
        relocate: Move extracted entries according to ``cache-info.json``;
            requires the archiver to extract into ``staging_dir``.
        staging_dir: Extraction root used in relocate mode.
        fallback_path: Where remote archives are materialised for the fallback.
        logger: Logger for progress and warnings.
    """

    def __init__(
        self,
        current: ArchiveInfo,
        archiver: Archiver,
        provider: StreamProvider,
        *,
        stack_check: Optional[bool] = None,
        allow_fallback: bool = True,
        restore_timestamps: bool = True,
        relocate: bool = False,
        staging_dir: Optional[Path] = None,
        fallback_path: Path = DEFAULT_FALLBACK_ARCHIVE_PATH,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if relocate and staging_dir is None:
            raise ValueError("relocate mode requires a staging directory")
        self.current = current
        self.archiver = archiver
        self.provider = provider
        self.stack_check = bool(current.stack_id) if stack_check is None else stack_check
        self.allow_fallback = allow_fallback
        self.restore_timestamps = restore_timestamps
        self.relocate = relocate
        self.staging_dir = staging_dir
        self.fallback_path = fallback_path
        self._logger = logger or LOGGER

    def run(self, uri: str) -> PullResult:
        """Pull the archive at ``uri``.

        Returns:
            The result in ``SUCCESS`` or ``SKIPPED`` state.

        Raises:
            DownloadFailure: If the archive cannot be opened.
            ArchiveFormatError: If the archive head cannot be parsed.
            MetadataDecodeError: If the embedded archive info is malformed.
            ExtractionFailure: If extraction fails and no fallback succeeds.
        """

        start = time.perf_counter()
        result = PullResult()
        self._logger.info(
            "downloading and extracting cache archive",
            extra={"stage": "pull", "url": redact_url(uri)},
        )

        streaming_error: Optional[Exception] = None
        with ExitStack() as stack:
            source = stack.enter_context(self.provider.open(uri))
            reader = stack.enter_context(ReplayReader(source, logger=self._logger))

            view = sniff_container(reader, logger=self._logger)
            result.compressed = view.compressed

            if self.stack_check:
                if not self._check_metadata(view, result):
                    result.state = PullState.SKIPPED
                    result.bytes_read = reader.bytes_read
                    return self._finish(result, start)
            else:
                self._logger.info(
                    "stack id not set, skipping stack check", extra={"stage": "metadata"}
                )

            reader.rewind()
            result.state = PullState.EXTRACTING
            self._logger.info(
                "extracting cache archive",
                extra={"stage": "extract", "compressed": result.compressed},
            )
            try:
                self.archiver.extract_stream(reader, compressed=result.compressed)
            except (ExtractionFailure, ArchiveFormatError, DownloadFailure, OSError) as exc:
                streaming_error = exc
            result.bytes_read = reader.bytes_read

        if streaming_error is not None:
            self._logger.warning(
                "streaming extraction failed",
                extra={"stage": "extract", "error": str(streaming_error)},
            )
            if not self.allow_fallback:
                if isinstance(streaming_error, ExtractionFailure):
                    raise streaming_error
                raise ExtractionFailure(
                    f"Failed to uncompress cache archive: {streaming_error}"
                ) from streaming_error
            self._fallback(uri, result)

        if self.relocate:
            self._relocate()

        result.state = PullState.SUCCESS
        return self._finish(result, start)

    def _check_metadata(self, view, result: PullResult) -> bool:
        """Gate on the archive's first entry; ``False`` means skip."""

        result.state = PullState.METADATA_CHECK
        self._logger.info(
            "checking archive and current stacks",
            extra={"stage": "metadata", "current": str(self.current)},
        )
        entry = read_first_entry(view)
        if entry is None or not entry.is_archive_info:
            self._logger.warning(
                "cache archive does not contain stack information, skipping stack check",
                extra={"stage": "metadata"},
            )
            return True

        result.state = PullState.GATING
        info = parse_archive_info(entry.read_payload())
        result.archive_info = info
        self._logger.info("archive stack: %s", info, extra={"stage": "gate"})

        gate = check_compatibility(self.current, info)
        result.gate = gate
        if not gate.proceed:
            self._logger.warning(
                "cache was created on %s, current environment is %s; skipping cache pull",
                info,
                self.current,
                extra={"stage": "gate", "reason": gate.reason.value},
            )
            return False
        if gate.legacy_archive:
            self._logger.warning(
                "cache archive predates architecture tagging, architecture check skipped",
                extra={"stage": "gate", "reason": gate.reason.value},
            )
        return True

    def _fallback(self, uri: str, result: PullResult) -> None:
        result.state = PullState.FALLBACK
        result.fallback_used = True
        self._logger.info("retrying extraction from a local copy", extra={"stage": "fallback"})
        try:
            path, size = self.provider.materialize(uri, self.fallback_path)
        except DownloadFailure as exc:
            raise ExtractionFailure(
                f"Retry failed, unable to download cache archive: {exc}"
            ) from exc

        result.fallback_archive_size = size
        self._logger.info(
            "Size of downloaded cache archive: %d Bytes",
            size,
            extra={
                "stage": "fallback",
                "event": "cache_fallback_archive_size",
                "cache_fallback_archive_size": size,
            },
        )

        try:
            self.archiver.extract_file(path, compressed=result.compressed)
        except ExtractionFailure as exc:
            raise ExtractionFailure(
                f"Retry failed, unable to uncompress cache archive: {exc}",
                command=exc.command,
                returncode=exc.returncode,
                output=exc.output,
            ) from exc

        if self.restore_timestamps and not self.relocate:
            try:
                updated = restore_timestamps(path, logger=self._logger)
            except (OSError, EOFError, tarfile.TarError) as exc:
                self._logger.warning(
                    "failed to restore archive timestamps",
                    extra={"stage": "fallback", "error": str(exc)},
                )
            else:
                self._logger.debug(
                    "restored archive timestamps",
                    extra={"stage": "fallback", "entries": updated},
                )

    def _relocate(self) -> None:
        assert self.staging_dir is not None
        info_path = self.staging_dir / CACHE_INFO_FILENAME
        if not info_path.is_file():
            self._logger.warning(
                "relocatable archive has no %s, nothing to move",
                CACHE_INFO_FILENAME,
                extra={"stage": "relocate"},
            )
            return
        cache_info = parse_cache_info(info_path.read_bytes())
        summary = relocate_cache_contents(self.staging_dir, cache_info, logger=self._logger)
        if summary.failed:
            self._logger.warning(
                "%d cache item(s) could not be relocated",
                len(summary.failed),
                extra={"stage": "relocate", "failed": summary.failed},
            )

    def _finish(self, result: PullResult, start: float) -> PullResult:
        result.duration_sec = time.perf_counter() - start
        self._logger.info(
            "cache pull finished",
            extra={
                "stage": "pull",
                "state": result.state.value,
                "bytes_read": result.bytes_read,
                "fallback": result.fallback_used,
                "duration_sec": round(result.duration_sec, 3),
            },
        )
        return result
