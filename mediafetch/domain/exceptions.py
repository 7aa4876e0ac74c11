"""Exception hierarchy for the mediafetch fetch layer.

Upstream failures, cache store outages, failed image fetches and invalid
configuration each get their own type so callers can decide whether to
retry, log or fall back to an empty result.
"""

from typing import Any, Dict, Optional

import httpx


class MediaFetchException(Exception):
    """Base exception for all mediafetch-specific exceptions."""

    def __init__(
        self,
        message: str,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.request_id = request_id
        self.details = details or {}


class UpstreamError(MediaFetchException):
    """Base exception for failures talking to a third-party API."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, request_id, details)
        self.url = url


class HttpStatusError(UpstreamError):
    """Raised when an upstream API answers with a non-2xx status.

    The original ``httpx.Response`` is attached as ``response`` so callers
    can inspect headers (e.g. ``Retry-After``) before deciding what to do.
    """

    def __init__(
        self,
        status_code: int,
        status_text: str,
        body: str,
        response: Optional[httpx.Response] = None,
        url: Optional[str] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        message = f"HTTP {status_code} {status_text}"
        if body:
            message = f"{message}: {body}"
        super().__init__(message, url, request_id, details)
        self.status_code = status_code
        self.status_text = status_text
        self.body = body
        self.response = response


class CacheError(MediaFetchException):
    """Base exception for cache-related errors."""

    pass


class CacheUnavailable(CacheError):
    """Raised by a cache store that cannot currently serve requests."""

    def __init__(
        self,
        message: str,
        cache_id: Optional[str] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, request_id, details)
        self.cache_id = cache_id


class FetchFailed(MediaFetchException):
    """Raised when a resource could not be fetched and no fallback applied."""

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, request_id, details)
        self.cause = cause


class ConfigurationError(MediaFetchException):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, request_id, details)
        self.config_key = config_key
