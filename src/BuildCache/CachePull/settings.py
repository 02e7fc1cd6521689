"""Runtime configuration for the cache pull step.

Settings are read from the environment through ``pydantic-settings``. Every
field accepts a ``CACHE_PULL_``-prefixed variable; the variable names used by
existing CI configurations (``cache_api_url``, ``is_debug_mode``,
``BITRISE_STACK_ID``) are accepted as aliases.

Example:
    >>> settings = CachePullSettings(cache_api_url="file:///tmp/cache.tar.gz")
    >>> settings.is_local_archive
    True
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .archive_info import ARCHITECTURE_AWARE_VERSION, ArchiveInfo, current_architecture
from .errors import ConfigError

__all__ = [
    "DEFAULT_FALLBACK_ARCHIVE_PATH",
    "DEFAULT_TIMESTAMP_PATH",
    "CachePullSettings",
    "load_settings",
]

DEFAULT_FALLBACK_ARCHIVE_PATH = Path("/tmp/cache-archive.tar")
DEFAULT_TIMESTAMP_PATH = Path("/tmp/cache-pull-end-time")

ExtractionMode = Literal["in_place", "relocate"]


class CachePullSettings(BaseSettings):
    """Environment-backed configuration for a single cache pull run."""

    cache_api_url: str = Field(
        default="",
        validation_alias=AliasChoices("CACHE_PULL_API_URL", "cache_api_url"),
        description="Cache index endpoint, signed download URL or file:// path",
    )
    debug_mode: bool = Field(
        default=False,
        validation_alias=AliasChoices("CACHE_PULL_DEBUG", "is_debug_mode"),
    )
    stack_id: str = Field(
        default="",
        validation_alias=AliasChoices("CACHE_PULL_STACK_ID", "BITRISE_STACK_ID"),
        description="Identifier of the current build environment; empty disables the gate",
    )
    architecture: str = Field(
        default_factory=current_architecture,
        validation_alias=AliasChoices("CACHE_PULL_ARCHITECTURE"),
    )
    allow_fallback: bool = Field(default=True)
    extraction_mode: ExtractionMode = Field(default="in_place")
    fallback_archive_path: Path = Field(default=DEFAULT_FALLBACK_ARCHIVE_PATH)
    timestamp_path: Path = Field(default=DEFAULT_TIMESTAMP_PATH)
    staging_dir: Optional[Path] = Field(default=None)
    api_timeout_sec: float = Field(default=20.0, gt=0)
    tar_executable: str = Field(default="tar", min_length=1)
    restore_timestamps: bool = Field(default=True)
    log_dir: Optional[Path] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="CACHE_PULL_",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("cache_api_url", "stack_id", "architecture", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("extraction_mode", mode="before")
    @classmethod
    def normalize_extraction_mode(cls, value: Any) -> Any:
        """Accept ``in-place``/``IN_PLACE`` spellings."""
        if isinstance(value, str):
            return value.strip().lower().replace("-", "_")
        return value

    @property
    def log_level(self) -> str:
        return "DEBUG" if self.debug_mode else "INFO"

    @property
    def is_local_archive(self) -> bool:
        return self.cache_api_url.startswith("file://")

    @property
    def relocate(self) -> bool:
        return self.extraction_mode == "relocate"

    def current_archive_info(self) -> ArchiveInfo:
        """Describe the environment of this run for the compatibility gate."""

        return ArchiveInfo(
            version=ARCHITECTURE_AWARE_VERSION,
            stack_id=self.stack_id,
            architecture=self.architecture,
        )

    def config_hash(self) -> str:
        """Return a stable digest of the effective configuration."""

        payload = self.model_dump(mode="json", exclude={"cache_api_url"})
        serialized = json.dumps(payload, sort_keys=True)
        return hashlib.sha256(serialized.encode("utf-8")).hexdigest()[:16]


def load_settings(overrides: Optional[Mapping[str, Any]] = None) -> CachePullSettings:
    """Build settings from the environment, applying explicit ``overrides``.

    Raises:
        ConfigError: If the environment or overrides fail validation.
    """

    values = {key: value for key, value in (overrides or {}).items() if value is not None}
    try:
        return CachePullSettings(**values)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid cache pull configuration: {exc}") from exc
