import httpx

from mediafetch.domain.exceptions import (
    CacheError,
    CacheUnavailable,
    ConfigurationError,
    FetchFailed,
    HttpStatusError,
    MediaFetchException,
    UpstreamError,
)


def test_http_status_error_message_and_fields():
    response = httpx.Response(429, text="slow down")

    error = HttpStatusError(429, "Too Many Requests", "slow down", response=response)

    assert str(error) == "HTTP 429 Too Many Requests: slow down"
    assert error.status_code == 429
    assert error.response is response
    assert isinstance(error, UpstreamError)
    assert isinstance(error, MediaFetchException)


def test_http_status_error_without_body():
    error = HttpStatusError(502, "Bad Gateway", "")

    assert str(error) == "HTTP 502 Bad Gateway"


def test_cache_unavailable_is_a_cache_error():
    error = CacheUnavailable("redis down", cache_id="tmdb")

    assert isinstance(error, CacheError)
    assert error.cache_id == "tmdb"


def test_fetch_failed_keeps_cause():
    cause = httpx.ConnectError("refused")

    error = FetchFailed("Failed to load image", cause=cause)

    assert error.cause is cause
    assert error.details == {}


def test_configuration_error_key():
    assert ConfigurationError("missing", config_key="image_cache_dir").config_key == (
        "image_cache_dir"
    )
