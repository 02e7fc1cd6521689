"""Archive metadata records embedded in published cache artifacts.

``archive_info.json`` is written by the cache push step as the first entry of
the archive and describes the environment that produced it. Older artifacts
either lack the record entirely or predate the ``architecture`` field; those
are flagged as legacy so the compatibility gate can waive the architecture
check for them.

``cache-info.json`` belongs to the earliest archive layout, where entries were
stored relative to the archive root and had to be moved into place after
extraction.
"""

from __future__ import annotations

import platform
from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import MetadataDecodeError

__all__ = [
    "ARCHITECTURE_AWARE_VERSION",
    "ArchiveInfo",
    "CacheContentDescriptor",
    "CacheInfo",
    "current_architecture",
    "parse_archive_info",
    "parse_cache_info",
]

ARCHITECTURE_AWARE_VERSION = 2

_ARCHITECTURE_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "x64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv8": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
}


def current_architecture() -> str:
    """Return the processor architecture tag used when publishing caches."""

    machine = platform.machine().strip().lower()
    return _ARCHITECTURE_ALIASES.get(machine, machine)


class ArchiveInfo(BaseModel):
    """Origin environment of a cache artifact.

    Attributes:
        version: Format version of the record; ``2`` introduced architectures.
        stack_id: Build environment (stack) identifier.
        architecture: Processor architecture tag, e.g. ``amd64`` or ``arm64``.

    Examples:
        >>> info = ArchiveInfo(version=2, stack_id="osx-xcode-12.3.x", architecture="arm64")
        >>> str(info)
        'osx-xcode-12.3.x (arm64)'
        >>> ArchiveInfo(version=1, stack_id="osx-xcode-12.3.x").is_legacy
        True
    """

    version: int = Field(default=0, ge=0)
    stack_id: str = ""
    architecture: str = ""

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("version", "stack_id", "architecture", mode="before")
    @classmethod
    def _null_as_zero_value(cls, value, info):
        """Read JSON ``null`` as the field's zero value."""
        if value is None:
            return cls.model_fields[info.field_name].default
        return value

    @property
    def is_legacy(self) -> bool:
        """Whether the record predates architecture tagging."""

        return self.version < ARCHITECTURE_AWARE_VERSION and not self.architecture

    def __str__(self) -> str:
        return f"{self.stack_id} ({self.architecture})"


class CacheContentDescriptor(BaseModel):
    """Maps one path inside a relocatable archive to its destination on disk."""

    destination_path: str
    relative_path_in_archive: str

    model_config = ConfigDict(frozen=True, extra="ignore")


class CacheInfo(BaseModel):
    """Contents listing of a relocatable (pre in-place) cache archive."""

    fingerprint: str = ""
    contents: List[CacheContentDescriptor] = Field(default_factory=list, alias="cache_contents")

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


def parse_archive_info(payload: bytes) -> ArchiveInfo:
    """Decode an ``archive_info.json`` payload.

    Raises:
        MetadataDecodeError: If the payload is not a JSON object matching the
            schema. Callers must not treat an undecodable record as compatible.
    """

    try:
        return ArchiveInfo.model_validate_json(payload)
    except PydanticValidationError as exc:
        raise MetadataDecodeError(f"Failed to parse archive info: {exc}") from exc


def parse_cache_info(payload: bytes) -> CacheInfo:
    """Decode a legacy ``cache-info.json`` payload."""

    try:
        return CacheInfo.model_validate_json(payload)
    except PydanticValidationError as exc:
        raise MetadataDecodeError(f"Failed to parse cache info: {exc}") from exc
