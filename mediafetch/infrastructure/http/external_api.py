"""
Cached, optionally rate-limited base client for third-party REST APIs.

Provider wrappers (metadata services, download managers, music catalogs)
subclass :class:`CachedRemoteClient` and call its ``get``/``post``/``put``/
``delete``/``get_rolling`` helpers with endpoint paths.
"""

import base64
import json
from types import TracebackType
from typing import Any, Dict, Mapping, Optional, Set, Tuple, Type
from urllib.parse import unquote, urlsplit, urlunsplit

import httpx

from .content import decode_response
from .http_client_factory import HttpClientFactory
from .rate_limiter import RateLimitConfig, RateLimiter, RateLimiterRegistry
from ...application.background import BackgroundTasks
from ...application.cache.ttl_store import CacheStore
from ...config import Settings
from ...constants import (
    DEFAULT_CACHE_TTL_SECONDS,
    DEFAULT_REQUEST_HEADERS,
    DEFAULT_ROLLING_BUFFER_SECONDS,
)
from ...domain.exceptions import CacheUnavailable, HttpStatusError
from ...logging import LogEvent, LogRecord, debug, error, warning
from ...tracing import inject_trace_context, outbound_span, record_response


def split_credentials(base_url: str) -> Tuple[str, Optional[str]]:
    """Strip ``user:pass@`` from a URL and return it with a Basic auth header value."""
    parts = urlsplit(base_url)
    if parts.username is None and parts.password is None:
        return base_url, None

    username = unquote(parts.username or "")
    password = unquote(parts.password or "")
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    netloc = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit(parts._replace(netloc=netloc)), f"Basic {token}"


class CachedRemoteClient:
    """
    Read-through TTL cache in front of an ``httpx.AsyncClient``.

    Responses are cached in an injected :class:`CacheStore` (usually a
    named cache from :class:`~mediafetch.application.cache.CacheRegistry`)
    under a key derived from the base URL, endpoint and merged query
    parameters. Concurrent misses for the same key are not coalesced;
    each caller fetches and the last write wins.

    ``get_rolling`` serves cached values immediately and refreshes them on
    the client's :class:`BackgroundTasks` runner once they are older than
    the rolling buffer, so enter the client with ``async with`` when using
    it.
    """

    def __init__(
        self,
        base_url: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        headers: Optional[Mapping[str, str]] = None,
        rate_limit: Optional[RateLimitConfig] = None,
        cache: Optional[CacheStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        background: Optional[BackgroundTasks] = None,
        limiters: Optional[RateLimiterRegistry] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.base_url, authorization = split_credentials(base_url)
        self.params: Dict[str, Any] = dict(params or {})
        self.default_headers: Dict[str, str] = dict(DEFAULT_REQUEST_HEADERS)
        if authorization:
            self.default_headers["Authorization"] = authorization
        self.default_headers.update(headers or {})
        self.cache = cache

        self._settings = settings
        self.default_ttl = (
            settings.cache_default_ttl if settings else DEFAULT_CACHE_TTL_SECONDS
        )
        self.rolling_buffer = (
            settings.cache_rolling_buffer
            if settings
            else DEFAULT_ROLLING_BUFFER_SECONDS
        )

        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._background = background
        self._owns_background = background is None
        self._refreshing: Set[str] = set()

        self.rate_limiter: Optional[RateLimiter] = None
        self._send = self._send_request
        if rate_limit is not None:
            self.rate_limiter = (
                limiters.get(rate_limit) if limiters else RateLimiter(rate_limit)
            )
            self._send = self.rate_limiter.wrap(self._send_request)

    async def __aenter__(self) -> "CachedRemoteClient":
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
                HttpClientFactory.create_client(self._settings)
                if self._settings
                else httpx.AsyncClient(follow_redirects=True)
            )
        return self._http_client

    @property
    def background(self) -> Optional[BackgroundTasks]:
        return self._background

    async def get(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        ttl: Optional[float] = None,
        request_options: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Cached GET; ``ttl=0`` fetches without storing the result."""
        cache_key = self.cache_key(endpoint, self._merge_params(params))
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached

        data = await self._fetch("GET", endpoint, params, request_options=request_options)
        self._cache_set(cache_key, data, ttl)
        return data

    async def post(
        self,
        endpoint: str,
        data: Any,
        params: Optional[Mapping[str, Any]] = None,
        ttl: Optional[float] = None,
        request_options: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        return await self._write("POST", endpoint, data, params, ttl, request_options)

    async def put(
        self,
        endpoint: str,
        data: Any,
        params: Optional[Mapping[str, Any]] = None,
        ttl: Optional[float] = None,
        request_options: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        return await self._write("PUT", endpoint, data, params, ttl, request_options)

    async def delete(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        request_options: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Uncached DELETE."""
        return await self._fetch(
            "DELETE", endpoint, params, request_options=request_options
        )

    async def get_rolling(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        ttl: Optional[float] = None,
        request_options: Optional[Mapping[str, Any]] = None,
        base_url: Optional[str] = None,
    ) -> Any:
        """
        Stale-while-revalidate GET.

        A cached value is always returned as is. When its remaining lifetime
        has dropped below ``ttl - rolling_buffer`` a refresh is spawned in
        the background and later calls see the refreshed value. Without a
        cached value this behaves like :meth:`get`.

        Refreshes run on the client's background runner, which only exists
        inside ``async with client:`` (or when a running ``background`` was
        passed in). Outside of it cached values are still served, but a due
        refresh is skipped with a ``rolling_refresh`` warning and the entry
        simply expires at the end of its TTL.
        """
        lifetime = self._resolve_ttl(ttl)
        cache_key = self.cache_key(endpoint, self._merge_params(params))
        cached = self._cache_get(cache_key)

        if cached is not None:
            remaining = self._cache_ttl(cache_key)
            if remaining is not None and remaining < lifetime - self.rolling_buffer:
                self._schedule_refresh(
                    cache_key, endpoint, params, ttl, request_options, base_url
                )
            return cached

        data = await self._fetch(
            "GET", endpoint, params, request_options=request_options, base_url=base_url
        )
        self._cache_set(cache_key, data, ttl)
        return data

    def invalidate(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        data: Any = None,
    ) -> bool:
        """Drop the cached response for a lookup; pass ``data`` for POST/PUT keys."""
        merged = self._merge_params(params)
        cache_key = (
            self.cache_key(endpoint, merged)
            if data is None
            else self.cache_key(endpoint, {"config": merged, "data": data})
        )
        if self.cache is None:
            return False
        try:
            removed = bool(self.cache.delete(cache_key))
        except CacheUnavailable as exc:
            self._log_cache_unavailable("delete", cache_key, exc)
            return False
        debug(
            LogRecord(
                event=LogEvent.CACHE_EVENT.value,
                message="Cache entry invalidated",
                data={"cache_key": cache_key, "removed": removed},
            )
        )
        return removed

    def cache_key(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """Deterministic key for a request shape."""
        if not params:
            return f"{self.base_url}{endpoint}"
        serialized = json.dumps(
            params, sort_keys=True, separators=(",", ":"), default=str
        )
        return f"{self.base_url}{endpoint}{serialized}"

    def format_url(self, endpoint: str, base_url: Optional[str] = None) -> str:
        base = base_url or self.base_url
        if not base:
            return endpoint
        return base + ("" if base.endswith("/") else "/") + endpoint.lstrip("/")

    async def _write(
        self,
        method: str,
        endpoint: str,
        data: Any,
        params: Optional[Mapping[str, Any]],
        ttl: Optional[float],
        request_options: Optional[Mapping[str, Any]],
    ) -> Any:
        cache_key = self.cache_key(
            endpoint, {"config": self._merge_params(params), "data": data}
        )
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached

        result = await self._fetch(
            method, endpoint, params, body=data, request_options=request_options
        )
        self._cache_set(cache_key, result, ttl)
        return result

    async def _fetch(
        self,
        method: str,
        endpoint: str,
        params: Optional[Mapping[str, Any]],
        body: Any = None,
        request_options: Optional[Mapping[str, Any]] = None,
        base_url: Optional[str] = None,
    ) -> Any:
        url = self.format_url(endpoint, base_url)
        response = await self._send(
            method, url, self._merge_params(params), body, request_options
        )

        if not response.is_success:
            body_text = response.text
            log = error if response.is_server_error else warning
            log(
                LogRecord(
                    event=LogEvent.UPSTREAM_ERROR.value,
                    message=f"{method} {url} failed with HTTP {response.status_code}",
                    data={
                        "method": method,
                        "url": url,
                        "status_code": response.status_code,
                        "body": body_text,
                    },
                )
            )
            raise HttpStatusError(
                response.status_code,
                response.reason_phrase,
                body_text,
                response=response,
                url=url,
            )

        return decode_response(response)

    async def _send_request(
        self,
        method: str,
        url: str,
        params: Dict[str, Any],
        body: Any,
        request_options: Optional[Mapping[str, Any]],
    ) -> httpx.Response:
        """The network primitive; the rate limiter, when configured, wraps this."""
        options = dict(request_options or {})
        headers = {**self.default_headers, **options.pop("headers", {})}
        if body is not None:
            options["json"] = body

        debug(
            LogRecord(
                event=LogEvent.UPSTREAM_REQUEST.value,
                message=f"{method} {url}",
                data={"method": method, "url": url, "params": params},
            )
        )
        with outbound_span(
            f"HTTP {method}", {"http.method": method, "http.url": url}
        ) as span:
            inject_trace_context(headers)
            response = await self.http_client.request(
                method, url, params=params or None, headers=headers, **options
            )
            record_response(span, response)
        debug(
            LogRecord(
                event=LogEvent.UPSTREAM_RESPONSE.value,
                message=f"{method} {url} -> {response.status_code}",
                data={
                    "method": method,
                    "url": url,
                    "status_code": response.status_code,
                },
            )
        )
        return response

    def _schedule_refresh(
        self,
        cache_key: str,
        endpoint: str,
        params: Optional[Mapping[str, Any]],
        ttl: Optional[float],
        request_options: Optional[Mapping[str, Any]],
        base_url: Optional[str],
    ) -> None:
        if cache_key in self._refreshing:
            return
        if self._background is None or not self._background.running:
            warning(
                LogRecord(
                    event=LogEvent.ROLLING_REFRESH.value,
                    message="Rolling refresh skipped: client is not running background tasks",
                    data={"cache_key": cache_key},
                )
            )
            return

        self._refreshing.add(cache_key)
        debug(
            LogRecord(
                event=LogEvent.ROLLING_REFRESH.value,
                message="Scheduling rolling refresh",
                data={"cache_key": cache_key},
            )
        )
        self._background.spawn(
            self._refresh,
            cache_key,
            endpoint,
            params,
            ttl,
            request_options,
            base_url,
            name=f"rolling-refresh:{endpoint}",
        )

    async def _refresh(
        self,
        cache_key: str,
        endpoint: str,
        params: Optional[Mapping[str, Any]],
        ttl: Optional[float],
        request_options: Optional[Mapping[str, Any]],
        base_url: Optional[str],
    ) -> None:
        try:
            data = await self._fetch(
                "GET",
                endpoint,
                params,
                request_options=request_options,
                base_url=base_url,
            )
            self._cache_set(cache_key, data, ttl)
        finally:
            self._refreshing.discard(cache_key)

    def _merge_params(self, params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        return {**self.params, **(params or {})}

    def _resolve_ttl(self, ttl: Optional[float]) -> float:
        return self.default_ttl if ttl is None else ttl

    def _cache_get(self, cache_key: str) -> Optional[Any]:
        if self.cache is None:
            return None
        try:
            cached = self.cache.get(cache_key)
        except CacheUnavailable as exc:
            self._log_cache_unavailable("get", cache_key, exc)
            return None
        debug(
            LogRecord(
                event=(
                    LogEvent.CACHE_HIT if cached is not None else LogEvent.CACHE_MISS
                ).value,
                message="Cache hit" if cached is not None else "Cache miss",
                data={"cache_key": cache_key},
            )
        )
        return cached

    def _cache_set(self, cache_key: str, value: Any, ttl: Optional[float]) -> None:
        lifetime = self._resolve_ttl(ttl)
        if self.cache is None or lifetime == 0:
            return
        try:
            self.cache.set(cache_key, value, lifetime)
        except CacheUnavailable as exc:
            self._log_cache_unavailable("set", cache_key, exc)

    def _cache_ttl(self, cache_key: str) -> Optional[float]:
        if self.cache is None:
            return None
        try:
            return self.cache.get_ttl(cache_key)
        except CacheUnavailable as exc:
            self._log_cache_unavailable("get_ttl", cache_key, exc)
            return None

    def _log_cache_unavailable(
        self, operation: str, cache_key: str, exc: CacheUnavailable
    ) -> None:
        warning(
            LogRecord(
                event=LogEvent.CACHE_UNAVAILABLE.value,
                message=f"Cache store unavailable during {operation}, bypassing cache",
                data={"operation": operation, "cache_key": cache_key},
            ),
            exc,
        )
