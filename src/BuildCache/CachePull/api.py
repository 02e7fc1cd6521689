"""Programmatic entry point for a complete cache pull run."""

from __future__ import annotations

import logging
import tempfile
import time
from pathlib import Path
from typing import Optional

from .errors import CachePullError
from .extractor import Archiver, TarArchiver
from .logging_utils import redact_url
from .net import CacheStreamProvider, resolve_download_url
from .pipeline import CachePullPipeline, PullResult, StreamProvider
from .settings import CachePullSettings
from .telemetry import record_failure, record_pull_result, write_pull_timestamp

__all__ = ["run_cache_pull"]

LOGGER = logging.getLogger("BuildCache.CachePull")


def _staging_dir(settings: CachePullSettings) -> Optional[Path]:
    if not settings.relocate:
        return None
    if settings.staging_dir is not None:
        settings.staging_dir.mkdir(parents=True, exist_ok=True)
        return settings.staging_dir
    return Path(tempfile.mkdtemp(prefix="cache-pull-"))


def run_cache_pull(
    settings: CachePullSettings,
    *,
    archiver: Optional[Archiver] = None,
    provider: Optional[StreamProvider] = None,
    logger: Optional[logging.Logger] = None,
) -> Optional[PullResult]:
    """Resolve, download, gate and extract the configured cache archive.

    Args:
        settings: Effective configuration for this run.
        archiver: Extraction capability; defaults to :class:`TarArchiver`.
        provider: Archive source; defaults to :class:`CacheStreamProvider`.
        logger: Logger for progress reporting.

    Returns:
        The pipeline result, or ``None`` when no cache URL is configured.

    Raises:
        CachePullError: On any fatal download, decode or extraction failure.
    """

    log = logger or LOGGER
    if not settings.cache_api_url:
        log.warning("No Cache API URL specified, there's no cache to use, exiting.")
        return None

    start = time.perf_counter()
    staging_dir = _staging_dir(settings)
    if archiver is None:
        archiver = TarArchiver(settings.tar_executable, directory=staging_dir, logger=log)
    if provider is None:
        provider = CacheStreamProvider(logger=log)

    try:
        if settings.is_local_archive:
            log.info("Using local cache archive", extra={"stage": "resolve"})
            uri = settings.cache_api_url
        else:
            log.info("Downloading remote cache archive", extra={"stage": "resolve"})
            uri = resolve_download_url(
                settings.cache_api_url, timeout=settings.api_timeout_sec, logger=log
            )
            log.debug("resolved download url", extra={"stage": "resolve", "url": redact_url(uri)})

        pipeline = CachePullPipeline(
            settings.current_archive_info(),
            archiver,
            provider,
            allow_fallback=settings.allow_fallback,
            restore_timestamps=settings.restore_timestamps,
            relocate=settings.relocate,
            staging_dir=staging_dir,
            fallback_path=settings.fallback_archive_path,
            logger=log,
        )
        result = pipeline.run(uri)
    except CachePullError:
        record_failure(time.perf_counter() - start)
        raise

    record_pull_result(result)
    try:
        write_pull_timestamp(settings.timestamp_path)
    except OSError as exc:
        log.warning(
            "failed to write pull timestamp to %s: %s",
            settings.timestamp_path,
            exc,
            extra={"stage": "pull"},
        )
    if result.skipped:
        log.info("Cache pull skipped", extra={"stage": "pull"})
    else:
        log.info("Done. Took %.1fs", result.duration_sec, extra={"stage": "pull"})
    return result
