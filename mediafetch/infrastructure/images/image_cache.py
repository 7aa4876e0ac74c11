"""
Filesystem cache for proxied images.

Layout under ``<root>/<namespace>/<cache_key>/``::

    <max_age>.<expires_at_ms>.<etag_token>.<extension>   image payload
    record.json                                           ImageCacheRecord

The sidecar record is authoritative for reads. The payload filename repeats
the same metadata, so a directory listing stays readable and a sweep can
tell a write in progress (payload landed, record not yet) from an expired
entry.
"""

import base64
import hashlib
import mimetypes
import os
import re
import shutil
import time
import uuid
from contextlib import asynccontextmanager
from types import TracebackType
from typing import (
    AsyncIterator,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Set,
    Type,
    Union,
)

import anyio
import httpx
from pydantic import ValidationError

from ..http.http_client_factory import HttpClientFactory
from ..http.rate_limiter import RateLimitConfig, RateLimiter, RateLimiterRegistry
from ...application.background import BackgroundTasks
from ...config import Settings
from ...constants import (
    DEFAULT_IMAGE_CACHE_VERSION,
    DEFAULT_IMAGE_MAX_AGE_SECONDS,
    IMAGE_RECORD_FILENAME,
    IMAGE_TEMP_PREFIX,
    IMAGE_WRITE_GRACE_SECONDS,
)
from ...domain.exceptions import ConfigurationError, FetchFailed, HttpStatusError
from ...domain.models import ImageCacheRecord, ImageCacheStats, ImageMeta, ImageResponse
from ...logging import LogEvent, LogRecord, debug, info, warning
from ...tracing import inject_trace_context, outbound_span, record_response

PathLike = Union[str, "os.PathLike[str]"]

_MAX_AGE_RE = re.compile(r"max-age\s*=\s*\"?(\d+)", re.IGNORECASE)


def parse_max_age(cache_control: Optional[str], default: int) -> int:
    """Return the ``max-age`` directive in seconds, or ``default`` when absent or zero."""
    if not cache_control:
        return default
    match = _MAX_AGE_RE.search(cache_control)
    if not match:
        return default
    return int(match.group(1)) or default


def normalize_etag(etag: Optional[str]) -> str:
    """Strip the weak validator prefix and quoting from an ETag."""
    if not etag:
        return ""
    etag = etag.strip()
    if etag[:2] in ("W/", "w/"):
        etag = etag[2:]
    return etag.replace('"', "")


def extension_for(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    media_type = content_type.split(";", 1)[0].strip().lower()
    extension = mimetypes.guess_extension(media_type)
    if not extension:
        return None
    return extension.lstrip(".")


def _etag_token(etag: str) -> str:
    # Hex only, so the token never contains the filename delimiter
    return hashlib.sha256(etag.encode("utf-8")).hexdigest()[:16]


def _is_payload(name: str) -> bool:
    return name != IMAGE_RECORD_FILENAME and not name.startswith(IMAGE_TEMP_PREFIX)


def _payload_expiry(name: str) -> Optional[int]:
    """Expiry in epoch ms encoded in a payload filename, ``None`` if malformed."""
    parts = name.split(".")
    if len(parts) != 4:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


def _last_modified(directory: str) -> float:
    latest = os.stat(directory).st_mtime
    for entry in os.scandir(directory):
        try:
            latest = max(latest, entry.stat().st_mtime)
        except FileNotFoundError:
            continue
    return latest


class DiskImageCache:
    """
    Fetches images from ``base_url`` and keeps them on disk per namespace.

    Reads never wait for revalidation: a stale image is returned right away
    and refreshed on the background runner. Writes for one key are
    serialised with a per-key lock and land through ``os.replace``, so a
    reader sees either the previous or the new image, never neither.
    """

    def __init__(
        self,
        key: str,
        base_url: str,
        *,
        root: Optional[PathLike] = None,
        cache_version: Optional[int] = None,
        rate_limit: Optional[RateLimitConfig] = None,
        headers: Optional[Mapping[str, str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        background: Optional[BackgroundTasks] = None,
        limiters: Optional[RateLimiterRegistry] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if root is None:
            if settings is None or not settings.image_cache_dir:
                raise ConfigurationError(
                    "Image cache root is not configured", config_key="image_cache_dir"
                )
            root = settings.image_cache_dir

        self.key = key
        self.base_url = base_url
        self.root = os.fspath(root)
        self.cache_version = (
            cache_version
            if cache_version is not None
            else settings.image_cache_version
            if settings
            else DEFAULT_IMAGE_CACHE_VERSION
        )
        self.default_max_age = (
            settings.image_default_max_age if settings else DEFAULT_IMAGE_MAX_AGE_SECONDS
        )
        self.headers = dict(headers or {})

        self._settings = settings
        self._clock = clock
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._background = background
        self._owns_background = background is None
        self._locks: Dict[str, anyio.Lock] = {}
        self._revalidating: Set[str] = set()

        self.rate_limiter: Optional[RateLimiter] = None
        self._send = self._fetch
        if rate_limit is not None:
            self.rate_limiter = (
                limiters.get(rate_limit) if limiters else RateLimiter(rate_limit)
            )
            self._send = self.rate_limiter.wrap(self._fetch)

    async def __aenter__(self) -> "DiskImageCache":
        if self._owns_background:
            self._background = BackgroundTasks()
            await self._background.__aenter__()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        try:
            if self._owns_background and self._background is not None:
                background, self._background = self._background, None
                await background.__aexit__(exc_type, exc, tb)
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client and self._http_client is not None:
            client, self._http_client = self._http_client, None
            await HttpClientFactory.close_client(client)

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = (
                HttpClientFactory.create_client(self._settings, {"Accept": "image/*"})
                if self._settings
                else httpx.AsyncClient(follow_redirects=True)
            )
        return self._http_client

    @property
    def background(self) -> Optional[BackgroundTasks]:
        return self._background

    @property
    def cache_directory(self) -> str:
        return os.path.join(self.root, self.key)

    def get_cache_key(self, path: str) -> str:
        """Filesystem-safe key for ``path`` in this namespace and cache version."""
        digest = hashlib.sha256()
        for item in (self.key, str(self.cache_version), path):
            digest.update(item.encode("utf-8"))
        return base64.b64encode(digest.digest()).decode("ascii").replace("/", "-")

    def format_url(self, path: str) -> str:
        base = self.base_url
        if base and not base.endswith("/"):
            base += "/"
        return base + (path[1:] if path.startswith("/") else path)

    async def get_image(
        self, path: str, fallback_path: Optional[str] = None
    ) -> ImageResponse:
        """
        Return the cached image for ``path``, fetching it on a miss.

        A stale hit is returned as is and revalidated in the background.
        If a miss cannot be fetched, ``fallback_path`` is tried once.

        Raises:
            FetchFailed: If neither ``path`` nor the fallback could be loaded.
        """
        cache_key = self.get_cache_key(path)
        cached = await self._read(cache_key)

        if cached is not None:
            debug(
                LogRecord(
                    event=LogEvent.IMAGE_CACHE_HIT.value,
                    message=f"Image cache hit in '{self.key}'",
                    data={"cache_key": cache_key, "is_stale": cached.meta.is_stale},
                )
            )
            if cached.meta.is_stale:
                self._schedule_revalidate(path, cache_key)
            return cached

        debug(
            LogRecord(
                event=LogEvent.IMAGE_CACHE_MISS.value,
                message=f"Image cache miss in '{self.key}'",
                data={"cache_key": cache_key, "path": path},
            )
        )
        try:
            return await self.set(path, cache_key)
        except Exception as exc:
            warning(
                LogRecord(
                    event=LogEvent.IMAGE_CACHE_FAILURE.value,
                    message=f"Failed to cache image in '{self.key}'",
                    data={
                        "path": path,
                        "cache_key": cache_key,
                        "fallback_path": fallback_path,
                    },
                ),
                exc,
            )
            if fallback_path:
                return await self.get_image(fallback_path)
            raise FetchFailed(f"Failed to load image '{path}'", cause=exc) from exc

    async def set(self, path: str, cache_key: str) -> ImageResponse:
        """
        Fetch ``path`` and store it under ``cache_key``.

        Raises:
            HttpStatusError: If the upstream answers with a non-2xx status.
            httpx.HTTPError: On transport failures.
            OSError: If the image cannot be written.
        """
        url = self.format_url(path)
        response = await self._send(url)
        if not response.is_success:
            raise HttpStatusError(
                response.status_code,
                response.reason_phrase,
                "",
                response=response,
                url=url,
            )

        image = response.content
        extension = extension_for(response.headers.get("content-type"))
        max_age = parse_max_age(
            response.headers.get("cache-control"), self.default_max_age
        )
        expires_at = self._now_ms() + max_age * 1000
        etag = normalize_etag(response.headers.get("etag"))
        record = ImageCacheRecord(
            max_age=max_age,
            expires_at=expires_at,
            etag=etag,
            extension=extension,
            filename=f"{max_age}.{expires_at}.{_etag_token(etag)}.{extension or 'bin'}",
        )

        async with self._key_lock(cache_key):
            await self._write(cache_key, record, image)

        info(
            LogRecord(
                event=LogEvent.IMAGE_CACHE_STORED.value,
                message=f"Cached image in '{self.key}'",
                data={
                    "cache_key": cache_key,
                    "filename": record.filename,
                    "size_bytes": len(image),
                },
            )
        )
        return ImageResponse(
            meta=ImageMeta(
                revalidate_after=expires_at,
                cur_revalidate=max_age,
                is_stale=False,
                etag=etag,
                extension=extension,
                cache_key=cache_key,
                cache_miss=True,
            ),
            image=image,
        )

    async def clear_cached_image(self, path: str) -> bool:
        """Remove the cached entry for ``path``; ``False`` if there was none."""
        cache_key = self.get_cache_key(path)
        directory = os.path.join(self.cache_directory, cache_key)
        async with self._key_lock(cache_key):
            try:
                await anyio.to_thread.run_sync(shutil.rmtree, directory)
            except FileNotFoundError:
                return False

        info(
            LogRecord(
                event=LogEvent.CACHE_EVENT.value,
                message=f"Cleared cached image from '{self.key}'",
                data={"cache_key": cache_key, "path": path},
            )
        )
        return True

    @staticmethod
    async def clear_cache(
        namespace: str,
        root: PathLike,
        clock: Callable[[], float] = time.time,
    ) -> int:
        """
        Sweep one namespace, removing entries whose encoded expiry has passed
        and idle directories with nothing usable in them.

        Returns:
            Number of key directories removed
        """
        namespace_dir = anyio.Path(os.fspath(root)) / namespace
        now_ms = int(clock() * 1000)
        removed = 0

        if not await namespace_dir.is_dir():
            warning(
                LogRecord(
                    event=LogEvent.IMAGE_CACHE_SWEEP.value,
                    message=f"Image cache directory for '{namespace}' not found",
                    data={"namespace": namespace, "path": str(namespace_dir)},
                )
            )
            return 0

        async for entry in namespace_dir.iterdir():
            if not await entry.is_dir():
                continue
            if not await DiskImageCache._is_sweepable(entry, now_ms):
                continue
            try:
                await anyio.to_thread.run_sync(shutil.rmtree, str(entry))
            except FileNotFoundError:
                continue
            removed += 1

        info(
            LogRecord(
                event=LogEvent.IMAGE_CACHE_SWEEP.value,
                message=f"Cleared {removed} stale image(s) from cache '{namespace}'",
                data={"namespace": namespace, "removed": removed},
            )
        )
        return removed

    @staticmethod
    async def _is_sweepable(directory: anyio.Path, now_ms: int) -> bool:
        """
        Whether a key directory holds nothing but expired or unusable data.

        Expiry comes from the record and from every payload filename, so a
        revalidation that has landed its payload but not yet its record keeps
        the directory alive. A directory with neither is only removed once
        it has been idle for ``IMAGE_WRITE_GRACE_SECONDS``.
        """
        expiries: List[int] = []
        record = await DiskImageCache._load_record(directory)
        if record is not None:
            expiries.append(record.expires_at)
        try:
            async for entry in directory.iterdir():
                if _is_payload(entry.name):
                    expiry = _payload_expiry(entry.name)
                    expiries.append(0 if expiry is None else expiry)
        except FileNotFoundError:
            return False

        if expiries:
            return all(now_ms > expiry for expiry in expiries)
        try:
            last_change = await anyio.to_thread.run_sync(
                _last_modified, str(directory)
            )
        except FileNotFoundError:
            return False
        return time.time() - last_change >= IMAGE_WRITE_GRACE_SECONDS

    @staticmethod
    async def get_image_stats(namespace: str, root: PathLike) -> ImageCacheStats:
        """Total bytes on disk and number of cached images for a namespace."""
        namespace_dir = os.path.join(os.fspath(root), namespace)
        size, image_count = await anyio.to_thread.run_sync(
            DiskImageCache._scan_directory, namespace_dir
        )
        return ImageCacheStats(size=size, image_count=image_count)

    @staticmethod
    def _scan_directory(directory: str) -> tuple:
        size = 0
        image_count = 0
        for dirpath, _dirnames, filenames in os.walk(directory):
            for name in filenames:
                try:
                    size += os.path.getsize(os.path.join(dirpath, name))
                except FileNotFoundError:
                    continue
                if _is_payload(name):
                    image_count += 1
        return size, image_count

    @staticmethod
    async def _load_record(directory: anyio.Path) -> Optional[ImageCacheRecord]:
        try:
            raw = await (directory / IMAGE_RECORD_FILENAME).read_bytes()
        except (FileNotFoundError, NotADirectoryError):
            return None
        try:
            return ImageCacheRecord.model_validate_json(raw)
        except ValidationError as exc:
            warning(
                LogRecord(
                    event=LogEvent.IMAGE_CACHE_FAILURE.value,
                    message="Unreadable image cache record",
                    data={"path": str(directory)},
                ),
                exc,
            )
            return None

    async def _read(self, cache_key: str) -> Optional[ImageResponse]:
        directory = anyio.Path(self.cache_directory) / cache_key
        record = await self._load_record(directory)
        if record is None:
            return None
        try:
            image = await (directory / record.filename).read_bytes()
        except (FileNotFoundError, NotADirectoryError):
            return None

        return ImageResponse(
            meta=ImageMeta(
                revalidate_after=record.expires_at,
                cur_revalidate=record.max_age,
                is_stale=record.is_expired(self._now_ms()),
                etag=record.etag,
                extension=record.extension,
                cache_key=cache_key,
                cache_miss=False,
            ),
            image=image,
        )

    async def _write(
        self, cache_key: str, record: ImageCacheRecord, image: bytes
    ) -> None:
        directory = anyio.Path(self.cache_directory) / cache_key
        for attempt in range(2):
            await directory.mkdir(parents=True, exist_ok=True)
            try:
                await self._replace_file(directory, record.filename, image)
                await self._replace_file(
                    directory,
                    IMAGE_RECORD_FILENAME,
                    record.model_dump_json().encode("utf-8"),
                )
                break
            except FileNotFoundError:
                # A concurrent sweep removed the directory; start over once.
                if attempt:
                    raise

        async for entry in directory.iterdir():
            if _is_payload(entry.name) and entry.name != record.filename:
                await entry.unlink(missing_ok=True)

    @staticmethod
    async def _replace_file(directory: anyio.Path, name: str, data: bytes) -> None:
        temp = directory / f"{IMAGE_TEMP_PREFIX}{uuid.uuid4().hex}"
        try:
            await temp.write_bytes(data)
            await temp.replace(directory / name)
        except BaseException:
            with anyio.CancelScope(shield=True):
                await temp.unlink(missing_ok=True)
            raise

    async def _fetch(self, url: str) -> httpx.Response:
        """The network primitive; the rate limiter, when configured, wraps this."""
        with outbound_span("HTTP GET", {"http.method": "GET", "http.url": url}) as span:
            headers = dict(self.headers)
            inject_trace_context(headers)
            response = await self.http_client.get(url, headers=headers or None)
            record_response(span, response)
        return response

    def _schedule_revalidate(self, path: str, cache_key: str) -> None:
        if cache_key in self._revalidating:
            return
        if self._background is None or not self._background.running:
            warning(
                LogRecord(
                    event=LogEvent.IMAGE_CACHE_REVALIDATE.value,
                    message="Revalidation skipped: image cache is not running background tasks",
                    data={"cache_key": cache_key},
                )
            )
            return

        self._revalidating.add(cache_key)
        debug(
            LogRecord(
                event=LogEvent.IMAGE_CACHE_REVALIDATE.value,
                message=f"Revalidating stale image in '{self.key}'",
                data={"cache_key": cache_key, "path": path},
            )
        )
        self._background.spawn(
            self._revalidate, path, cache_key, name=f"image-revalidate:{self.key}"
        )

    async def _revalidate(self, path: str, cache_key: str) -> None:
        try:
            await self.set(path, cache_key)
        finally:
            self._revalidating.discard(cache_key)

    @asynccontextmanager
    async def _key_lock(self, cache_key: str) -> AsyncIterator[None]:
        """Serialise writers for one key; the entry is dropped once unused."""
        lock = self._locks.get(cache_key)
        if lock is None:
            lock = self._locks[cache_key] = anyio.Lock()
        try:
            async with lock:
                yield
        finally:
            if (
                not lock.locked()
                and lock.statistics().tasks_waiting == 0
                and self._locks.get(cache_key) is lock
            ):
                del self._locks[cache_key]

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)
