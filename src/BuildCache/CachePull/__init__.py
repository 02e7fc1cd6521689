# === NAVMAP v1 ===
# {
#   "module": "BuildCache.CachePull",
#   "purpose": "Package initialization for BuildCache.CachePull",
#   "sections": [
#     {"id": "getattr", "name": "__getattr__", "anchor": "function-getattr", "kind": "function"},
#     {"id": "dir", "name": "__dir__", "anchor": "function-dir", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Public API for restoring published build caches.

The facade resolves a cache download URL, checks the archive's recorded
environment against the current one and restores the archive through an
external ``tar``, retrying from a local copy when streaming fails.
Submodules are imported lazily so ``import BuildCache.CachePull`` stays cheap.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any, Dict, List

__version__ = "2.4.0"

_EXPORT_MAP: Dict[str, str] = {
    "ArchiveFormatError": "errors",
    "ArchiveInfo": "archive_info",
    "CachePullError": "errors",
    "CachePullPipeline": "pipeline",
    "CachePullSettings": "settings",
    "CacheStreamProvider": "net",
    "DownloadFailure": "errors",
    "ExtractionFailure": "errors",
    "GateDecision": "compatibility",
    "GateResult": "compatibility",
    "MetadataDecodeError": "errors",
    "PullResult": "pipeline",
    "PullState": "pipeline",
    "ReplayReader": "replay",
    "TarArchiver": "extractor",
    "check_compatibility": "compatibility",
    "load_settings": "settings",
    "run_cache_pull": "api",
}

__all__ = [*sorted(_EXPORT_MAP), "__version__"]


def __getattr__(name: str) -> Any:
    module_name = _EXPORT_MAP.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    value = getattr(import_module(f".{module_name}", __name__), name)
    globals()[name] = value
    return value


def __dir__() -> List[str]:
    return sorted(set(globals()) | set(_EXPORT_MAP))
