# === NAVMAP v1 ===
# {
#   "module": "BuildCache.CachePull.net",
#   "purpose": "Shared HTTPX client, download URL resolution and cache archive streams",
#   "sections": [
#     {"id": "constants", "name": "Constants & globals", "anchor": "CONST", "kind": "constants"},
#     {"id": "helpers", "name": "Client construction helpers", "anchor": "HELP", "kind": "helpers"},
#     {"id": "api", "name": "Public API", "anchor": "API", "kind": "api"},
#     {"id": "provider", "name": "CacheStreamProvider", "anchor": "class-cachestreamprovider", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Networking for the cache pull step.

A single ``httpx.Client`` is shared by the process. Responses are never HTTP
cached: download URLs are short-lived signed URLs and the archives are large
one-shot bodies. The client has no overall read timeout because archive
downloads may legitimately take a long time; the cache index request carries
its own timeout instead.
"""

from __future__ import annotations

import contextlib
import io
import logging
import os
import ssl
import threading
from pathlib import Path
from typing import Callable, Iterator, Optional, Tuple
from urllib.parse import unquote, urlsplit

import certifi
import httpx

from .errors import DownloadFailure
from .logging_utils import redact_url

__all__ = [
    "CacheStreamProvider",
    "configure_http_client",
    "get_http_client",
    "local_path_for",
    "reset_http_client",
    "resolve_download_url",
]

LOGGER = logging.getLogger("BuildCache.CachePull.net")

# --- Constants & globals -------------------------------------------------------

_CLIENT_LOCK = threading.RLock()
_HTTP_CLIENT: Optional[httpx.Client] = None
_CLIENT_FACTORY: Optional[Callable[[], httpx.Client]] = None

_CONNECT_TIMEOUT_SEC = 30.0
_CHUNK_SIZE = 1 << 20
_BODY_EXCERPT = 512

NOT_FOUND_MESSAGE = (
    "build cache not found: probably cache not initialised yet "
    "(first cache push initialises the cache), nothing to worry about ;)"
)

# --- Client construction helpers ----------------------------------------------


def _build_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    return context


def _build_http_client() -> httpx.Client:
    return httpx.Client(
        timeout=httpx.Timeout(None, connect=_CONNECT_TIMEOUT_SEC),
        verify=_build_ssl_context(),
        trust_env=True,
        follow_redirects=True,
    )


def _close_client_unlocked() -> None:
    global _HTTP_CLIENT
    if _HTTP_CLIENT is not None:
        with contextlib.suppress(Exception):
            _HTTP_CLIENT.close()
    _HTTP_CLIENT = None


def _body_excerpt(response: httpx.Response) -> str:
    try:
        text = response.read().decode("utf-8", errors="replace")
    except httpx.HTTPError:
        return ""
    return text[:_BODY_EXCERPT]


# --- Public API ----------------------------------------------------------------


def configure_http_client(
    client: Optional[httpx.Client] = None,
    *,
    factory: Optional[Callable[[], httpx.Client]] = None,
) -> None:
    """Override the shared HTTPX client or register a factory for tests."""

    if client is not None and factory is not None:
        raise ValueError("provide either a client or factory, not both")

    global _HTTP_CLIENT, _CLIENT_FACTORY
    with _CLIENT_LOCK:
        if client is None:
            _close_client_unlocked()
        elif _HTTP_CLIENT is not client:
            _close_client_unlocked()
            _HTTP_CLIENT = client
        _CLIENT_FACTORY = factory


def reset_http_client() -> None:
    """Reset the shared HTTPX client to its default configuration (test helper)."""

    global _CLIENT_FACTORY
    with _CLIENT_LOCK:
        _CLIENT_FACTORY = None
        _close_client_unlocked()


def get_http_client() -> httpx.Client:
    """Return the shared HTTPX client, creating it if necessary."""

    global _HTTP_CLIENT
    with _CLIENT_LOCK:
        if _HTTP_CLIENT is None:
            factory = _CLIENT_FACTORY or _build_http_client
            client = factory()
            if not isinstance(client, httpx.Client):
                raise TypeError("client factory must return an httpx.Client")
            _HTTP_CLIENT = client
        return _HTTP_CLIENT


def resolve_download_url(
    api_url: str,
    *,
    timeout: float = 20.0,
    client: Optional[httpx.Client] = None,
    logger: Optional[logging.Logger] = None,
) -> str:
    """Ask the cache index at ``api_url`` for a signed archive download URL.

    Raises:
        DownloadFailure: On transport errors, a status outside 200-202 (no
            cache published yet), an unparsable body or an empty URL.
    """

    log = logger or LOGGER
    http = client or get_http_client()
    log.debug("resolving download url", extra={"stage": "resolve", "url": redact_url(api_url)})
    try:
        response = http.get(api_url, timeout=timeout)
    except httpx.HTTPError as exc:
        raise DownloadFailure(
            f"Failed to query cache index: {exc}", url=redact_url(api_url)
        ) from exc

    status = response.status_code
    if status < 200 or status > 202:
        raise DownloadFailure(NOT_FOUND_MESSAGE, status_code=status, url=redact_url(api_url))

    try:
        payload = response.json()
    except ValueError as exc:
        raise DownloadFailure(
            f"Request sent, but failed to parse JSON response (http-code:{status}): "
            f"{response.text[:_BODY_EXCERPT]}",
            status_code=status,
        ) from exc

    download_url = payload.get("download_url") if isinstance(payload, dict) else None
    if not isinstance(download_url, str) or not download_url.strip():
        raise DownloadFailure(
            f"Request sent, but Download URL is empty (http-code:{status}): "
            f"{response.text[:_BODY_EXCERPT]}",
            status_code=status,
        )
    return download_url.strip()


def local_path_for(uri: str) -> Optional[Path]:
    """Return the filesystem path for ``file://`` URIs and bare paths.

    Examples:
        >>> local_path_for("file:///tmp/cache.tar")
        PosixPath('/tmp/cache.tar')
        >>> local_path_for("https://example.com/cache.tar") is None
        True
    """

    parts = urlsplit(uri)
    if parts.scheme == "file":
        return Path(unquote(parts.path))
    if parts.scheme == "":
        return Path(uri)
    return None


class _ResponseStream(io.RawIOBase):
    """Readable raw stream over the decoded body of a streamed response."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__()
        self._chunks = response.iter_bytes(_CHUNK_SIZE)
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        view = memoryview(b).cast("B")
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
            except httpx.HTTPError as exc:
                raise DownloadFailure(f"Archive download interrupted: {exc}") from exc
        count = min(len(view), len(self._pending))
        view[:count] = self._pending[:count]
        self._pending = self._pending[count:]
        return count


class CacheStreamProvider:
    """Opens cache archives from ``file://`` paths or HTTP(S) URLs.

    Args:
        client: HTTPX client; defaults to the shared client.
        logger: Logger for request tracing.
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self._logger = logger or LOGGER

    @property
    def client(self) -> httpx.Client:
        return self._client or get_http_client()

    @contextlib.contextmanager
    def open(self, uri: str) -> Iterator[io.RawIOBase]:
        """Yield a single-pass binary stream over the archive at ``uri``.

        Raises:
            DownloadFailure: If the file cannot be opened, the request fails
                or the server does not answer ``200``.
        """

        path = local_path_for(uri)
        if path is not None:
            try:
                handle = path.open("rb")
            except OSError as exc:
                raise DownloadFailure(f"Failed to open cache archive {path}: {exc}") from exc
            with handle:
                yield handle
            return

        safe_url = redact_url(uri)
        self._logger.debug("opening archive stream", extra={"stage": "download", "url": safe_url})
        try:
            with self.client.stream("GET", uri) as response:
                if response.status_code != 200:
                    raise DownloadFailure(
                        f"Failed to download archive - non success response code: "
                        f"{response.status_code}, body: {_body_excerpt(response)}",
                        status_code=response.status_code,
                        url=safe_url,
                    )
                with _ResponseStream(response) as stream:
                    yield stream
        except httpx.HTTPError as exc:
            raise DownloadFailure(f"Failed to download archive: {exc}", url=safe_url) from exc

    def materialize(self, uri: str, destination: Path) -> Tuple[Path, int]:
        """Make the archive at ``uri`` available as a local file.

        ``file://`` archives are used where they are. Remote archives are
        downloaded again into ``destination`` through a ``.part`` file.

        Returns:
            The archive path and its size in bytes.
        """

        path = local_path_for(uri)
        if path is not None:
            try:
                return path, path.stat().st_size
            except OSError as exc:
                raise DownloadFailure(f"Cache archive {path} is not readable: {exc}") from exc

        part_path = destination.with_suffix(destination.suffix + ".part")
        part_path.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        try:
            with self.open(uri) as stream, part_path.open("wb") as target:
                while True:
                    chunk = stream.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    target.write(chunk)
                    written += len(chunk)
            os.replace(part_path, destination)
        except DownloadFailure:
            part_path.unlink(missing_ok=True)
            raise
        except OSError as exc:
            part_path.unlink(missing_ok=True)
            self._logger.error(
                "filesystem error during download",
                extra={"stage": "download", "error": str(exc)},
            )
            raise DownloadFailure(f"Failed to write cache archive: {exc}") from exc
        return destination, written
