"""Pooled ``httpx.AsyncClient`` construction for upstream fetches."""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx

from ...config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionLimits:
    """Connection pool sizing taken from ``POOL_*`` settings."""

    max_keepalive: int
    max_connections: int
    keepalive_expiry: float

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConnectionLimits":
        return cls(
            max_keepalive=settings.pool_max_keepalive_connections,
            max_connections=settings.pool_max_connections,
            keepalive_expiry=settings.pool_keepalive_expiry,
        )

    def to_httpx(self) -> httpx.Limits:
        return httpx.Limits(
            max_keepalive_connections=self.max_keepalive,
            max_connections=self.max_connections,
            keepalive_expiry=self.keepalive_expiry,
        )


def _timeout(settings: Settings) -> httpx.Timeout:
    return httpx.Timeout(
        connect=settings.http_connect_timeout,
        read=settings.http_read_timeout,
        write=settings.http_write_timeout,
        pool=settings.http_pool_timeout,
    )


def _h2_available() -> bool:
    try:
        import h2  # noqa: F401
    except ImportError:
        return False
    return True


class HttpClientFactory:
    """Builds and disposes of the httpx clients owned by this package.

    Clients passed in by callers are never created or closed here; only the
    ones a component builds for itself from :class:`Settings`.
    """

    @staticmethod
    def create_client(
        settings: Settings, headers: Optional[Mapping[str, str]] = None
    ) -> httpx.AsyncClient:
        """Create a client with pool limits, timeouts and default headers.

        ``headers`` are merged over the package defaults. HTTP/2 is used when
        ``HTTP2_ENABLED`` is set and the ``h2`` package is importable.
        """
        options: Dict[str, Any] = {
            "limits": ConnectionLimits.from_settings(settings).to_httpx(),
            "timeout": _timeout(settings),
            "headers": {
                **HttpClientFactory.get_default_headers(settings),
                **(headers or {}),
            },
            "verify": os.getenv("SSL_CERT_FILE", True),
            "follow_redirects": True,
        }
        if settings.http2_enabled:
            if _h2_available():
                options["http2"] = True
            else:
                logger.info("h2 not installed, upstream fetches use HTTP/1.1")
        return httpx.AsyncClient(**options)

    @staticmethod
    async def close_client(client: Optional[httpx.AsyncClient]) -> None:
        """Close ``client``, logging rather than raising on transport errors."""
        if client is None or client.is_closed:
            return
        try:
            await client.aclose()
        except (httpx.HTTPError, RuntimeError) as e:
            logger.warning("Error closing upstream HTTP client: %s", e)

    @staticmethod
    def get_default_headers(settings: Settings) -> Dict[str, str]:
        return {"User-Agent": settings.user_agent, "Accept-Charset": "utf-8"}
