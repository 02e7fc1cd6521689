"""Shared fixtures for the cache pull test suite."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from BuildCache.CachePull.net import reset_http_client

_ENV_VARS = (
    "CACHE_PULL_API_URL",
    "cache_api_url",
    "CACHE_PULL_DEBUG",
    "is_debug_mode",
    "CACHE_PULL_STACK_ID",
    "BITRISE_STACK_ID",
    "CACHE_PULL_ARCHITECTURE",
    "CACHE_PULL_ALLOW_FALLBACK",
    "CACHE_PULL_EXTRACTION_MODE",
    "CACHE_PULL_FALLBACK_ARCHIVE_PATH",
    "CACHE_PULL_TIMESTAMP_PATH",
    "CACHE_PULL_STAGING_DIR",
    "CACHE_PULL_API_TIMEOUT_SEC",
    "CACHE_PULL_TAR_EXECUTABLE",
    "CACHE_PULL_RESTORE_TIMESTAMPS",
    "CACHE_PULL_LOG_DIR",
)


@pytest.fixture(autouse=True)
def clean_cache_pull_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Isolate tests from CI variables that configure real pulls."""

    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _reset_shared_client():
    yield
    reset_http_client()


@pytest.fixture
def pull_logger() -> logging.Logger:
    logger = logging.getLogger("tests.cache_pull")
    logger.setLevel(logging.DEBUG)
    logger.propagate = True
    return logger


@pytest.fixture
def pull_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point fallback and timestamp paths into ``tmp_path``."""

    monkeypatch.setenv("CACHE_PULL_FALLBACK_ARCHIVE_PATH", str(tmp_path / "cache-archive.tar"))
    monkeypatch.setenv("CACHE_PULL_TIMESTAMP_PATH", str(tmp_path / "cache-pull-end-time"))
    return tmp_path
