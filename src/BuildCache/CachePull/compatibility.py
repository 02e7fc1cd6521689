"""Compatibility gate deciding whether a cache archive may be restored.

The gate is a pure function of two :class:`ArchiveInfo` records: the current
environment (always fully populated) and the one embedded in the archive. It
mirrors the policy gate contract used elsewhere: a frozen result carrying the
decision, the reason and the evaluation latency, with no logging or other
side effects so it can be unit-tested in isolation.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .archive_info import ArchiveInfo

__all__ = [
    "GateDecision",
    "GateReason",
    "GateResult",
    "check_compatibility",
    "normalize_stack_id",
]

# Trailing hardware-generation qualifier, e.g. "-gen2-mmg4-12c-60gb-300gb-atl01-ded001".
_GENERATION_SUFFIX = re.compile(r"-gen\d+(?:-.*)?$")


class GateDecision(str, Enum):
    PROCEED = "proceed"
    SKIP = "skip"


class GateReason(str, Enum):
    COMPATIBLE = "compatible"
    LEGACY_ARCHIVE = "legacy_archive"
    STACK_MISMATCH = "stack_mismatch"
    ARCHITECTURE_MISMATCH = "architecture_mismatch"


@dataclass(frozen=True)
class GateResult:
    """Outcome of :func:`check_compatibility`."""

    decision: GateDecision
    reason: GateReason
    current: ArchiveInfo
    archive: ArchiveInfo
    elapsed_ms: float

    @property
    def proceed(self) -> bool:
        return self.decision is GateDecision.PROCEED

    @property
    def legacy_archive(self) -> bool:
        return self.reason is GateReason.LEGACY_ARCHIVE


def normalize_stack_id(stack_id: str) -> Optional[str]:
    """Return the canonical stack identifier, or ``None`` when it is empty.

    Examples:
        >>> normalize_stack_id("osx-xcode-12.3.x-gen2-mmg4-12c-60gb-300gb-atl01-ded001")
        'osx-xcode-12.3.x'
        >>> normalize_stack_id("linux-docker-android-lts")
        'linux-docker-android-lts'
        >>> normalize_stack_id("") is None
        True
    """

    stripped = stack_id.strip()
    if not stripped:
        return None
    return _GENERATION_SUFFIX.sub("", stripped) or None


def check_compatibility(current: ArchiveInfo, archive: ArchiveInfo) -> GateResult:
    """Decide whether an archive built on ``archive`` may be used on ``current``.

    Args:
        current: Environment of this run; stack and architecture populated.
        archive: Record decoded from the archive's ``archive_info.json``.

    Returns:
        GateResult with ``SKIP`` when the canonical stacks differ (an empty
        identifier on either side never matches) or, for non-legacy records,
        when the architectures differ. Legacy records proceed regardless of
        architecture with ``reason=LEGACY_ARCHIVE``.
    """

    start_ms = time.perf_counter() * 1000

    def _result(decision: GateDecision, reason: GateReason) -> GateResult:
        return GateResult(
            decision=decision,
            reason=reason,
            current=current,
            archive=archive,
            elapsed_ms=time.perf_counter() * 1000 - start_ms,
        )

    current_stack = normalize_stack_id(current.stack_id)
    archive_stack = normalize_stack_id(archive.stack_id)
    if current_stack is None or archive_stack is None or current_stack != archive_stack:
        return _result(GateDecision.SKIP, GateReason.STACK_MISMATCH)

    if archive.is_legacy:
        return _result(GateDecision.PROCEED, GateReason.LEGACY_ARCHIVE)

    if archive.architecture != current.architecture:
        return _result(GateDecision.SKIP, GateReason.ARCHITECTURE_MISMATCH)

    return _result(GateDecision.PROCEED, GateReason.COMPATIBLE)
