"""Response body decoding by content type."""

from typing import Any, Optional

import httpx

from ...constants import JSON_CONTENT_TYPES, TEXT_CONTENT_TYPES
from ...logging import LogEvent, LogRecord, debug


def media_type(response: httpx.Response) -> Optional[str]:
    """Return the bare, lower-cased media type of ``response``."""
    content_type = response.headers.get("content-type")
    if not content_type:
        return None
    return content_type.split(";", 1)[0].strip().lower() or None


def decode_response(response: httpx.Response) -> Any:
    """
    Decode a response body according to its declared content type.

    JSON types are parsed, XML/HTML/plain text are returned as ``str``.
    Anything else, including a missing header, is tried as JSON first
    because several providers mislabel their payloads; failing that the
    raw bytes are returned, and an empty body yields ``None``.
    """
    kind = media_type(response)

    if kind in JSON_CONTENT_TYPES or (kind is not None and kind.endswith("+json")):
        return response.json()

    if kind in TEXT_CONTENT_TYPES:
        return response.text

    try:
        return response.json()
    except ValueError:
        pass

    content = response.content
    if not content:
        return None

    debug(
        LogRecord(
            event=LogEvent.CONTENT_DECODE_FALLBACK.value,
            message="Response is not JSON, returning raw bytes",
            data={"content_type": kind, "size_bytes": len(content)},
        )
    )
    return content
