"""Exception hierarchy shared across cache download, inspection, and extraction.

A cache pull spans configuration parsing, HTTP retrieval, archive sniffing,
metadata decoding and handing the stream to an external archiver. This module
groups those failure modes so the CLI can map every fatal condition onto a
single operator-facing message and exit code, while the pipeline can still
tell recoverable extraction failures apart from transport or decode errors.

A compatibility mismatch is deliberately absent: skipping an incompatible
archive is a normal outcome and is reported through the gate result.
"""

from __future__ import annotations

from typing import Optional, Sequence

__all__ = [
    "CachePullError",
    "ConfigError",
    "DownloadFailure",
    "ArchiveFormatError",
    "MetadataDecodeError",
    "ExtractionFailure",
]


class CachePullError(RuntimeError):
    """Base exception for cache pull failures."""


class ConfigError(CachePullError):
    """Raised when CLI arguments or environment configuration are invalid."""


class DownloadFailure(CachePullError):
    """Raised when opening or downloading the cache archive fails."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class ArchiveFormatError(CachePullError):
    """Raised when the container cannot be parsed after the format was sniffed."""


class MetadataDecodeError(CachePullError):
    """Raised when the embedded archive info record is not valid JSON."""


class ExtractionFailure(CachePullError):
    """Raised when the external archiver fails to restore the archive.

    Attributes:
        command: Argument vector of the archiver invocation, when one was made.
        returncode: Exit status of the archiver, ``None`` if it never ran.
        output: Trailing lines of the archiver's combined stdout/stderr.
    """

    def __init__(
        self,
        message: str,
        *,
        command: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.command = tuple(command or ())
        self.returncode = returncode
        self.output = output
