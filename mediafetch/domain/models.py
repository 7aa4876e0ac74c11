"""Value objects returned by the image cache."""

from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field


class ImageCacheRecord(BaseModel):
    """Sidecar record describing the single payload file of a key directory."""

    max_age: int = Field(..., ge=0)
    expires_at: int  # epoch milliseconds
    etag: str = ""
    extension: Optional[str] = None
    filename: str

    def is_expired(self, now_ms: int) -> bool:
        return now_ms > self.expires_at


@dataclass
class ImageMeta:
    """Cache metadata handed to image proxy routes.

    Attributes:
        revalidate_after: Epoch milliseconds after which a refresh is due.
        cur_revalidate: The record's max-age in seconds.
        is_stale: Whether the record was past its expiry when read.
        etag: Upstream ETag with quoting removed.
        extension: File extension derived from the upstream content type.
        cache_key: Key directory name.
        cache_miss: ``True`` when the image was fetched for this call.
    """

    revalidate_after: int
    cur_revalidate: int
    is_stale: bool
    etag: str
    extension: Optional[str]
    cache_key: str
    cache_miss: bool


@dataclass
class ImageResponse:
    meta: ImageMeta
    image: bytes


@dataclass
class ImageCacheStats:
    size: int
    image_count: int
