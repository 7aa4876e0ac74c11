import os
from typing import Any, List, Optional, Union

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", env_prefix="", case_sensitive=False
    )

    app_name: str = "mediafetch"
    app_version: str = "1.0.0"

    config_directory: str = Field(
        default="config", validation_alias=AliasChoices("CONFIG_DIRECTORY")
    )
    image_cache_dir: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("IMAGE_CACHE_DIR")
    )

    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOG_LEVEL"))
    log_file_path: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("LOG_FILE_PATH")
    )
    error_log_file_path: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("ERROR_LOG_FILE_PATH")
    )
    log_pretty_console: bool = Field(
        default=False, validation_alias=AliasChoices("LOG_PRETTY_CONSOLE")
    )
    redact_log_fields: Union[List[str], str] = Field(
        default_factory=lambda: ["authorization", "x-api-key", "api_key"],
        validation_alias=AliasChoices("REDACT_LOG_FIELDS"),
    )

    # API response cache
    cache_default_ttl: int = Field(
        default=300, validation_alias=AliasChoices("CACHE_DEFAULT_TTL")
    )
    cache_rolling_buffer: float = Field(
        default=10.0, validation_alias=AliasChoices("CACHE_ROLLING_BUFFER")
    )
    cache_check_period: int = Field(
        default=120, validation_alias=AliasChoices("CACHE_CHECK_PERIOD")
    )
    cache_max_keys: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("CACHE_MAX_KEYS")
    )

    # Image cache
    image_default_max_age: int = Field(
        default=86400, validation_alias=AliasChoices("IMAGE_DEFAULT_MAX_AGE")
    )
    image_cache_version: int = Field(
        default=1, validation_alias=AliasChoices("IMAGE_CACHE_VERSION")
    )

    # Connection pool configuration
    pool_max_keepalive_connections: int = Field(
        default=20, validation_alias=AliasChoices("POOL_MAX_KEEPALIVE_CONNECTIONS")
    )
    pool_max_connections: int = Field(
        default=100, validation_alias=AliasChoices("POOL_MAX_CONNECTIONS")
    )
    pool_keepalive_expiry: int = Field(
        default=60, validation_alias=AliasChoices("POOL_KEEPALIVE_EXPIRY")
    )

    # HTTP timeout configuration
    http_connect_timeout: float = Field(
        default=10.0, validation_alias=AliasChoices("HTTP_CONNECT_TIMEOUT")
    )
    http_read_timeout: float = Field(
        default=30.0, validation_alias=AliasChoices("HTTP_READ_TIMEOUT")
    )
    http_write_timeout: float = Field(
        default=30.0, validation_alias=AliasChoices("HTTP_WRITE_TIMEOUT")
    )
    http_pool_timeout: float = Field(
        default=10.0, validation_alias=AliasChoices("HTTP_POOL_TIMEOUT")
    )
    http2_enabled: bool = Field(
        default=False, validation_alias=AliasChoices("HTTP2_ENABLED")
    )
    user_agent: str = Field(
        default="mediafetch/1.0.0", validation_alias=AliasChoices("USER_AGENT")
    )

    # Distributed tracing configuration
    tracing_enabled: bool = Field(
        default=False, validation_alias=AliasChoices("TRACING_ENABLED")
    )
    tracing_exporter: str = Field(
        default="console", validation_alias=AliasChoices("TRACING_EXPORTER")
    )
    tracing_endpoint: str = Field(
        default="", validation_alias=AliasChoices("TRACING_ENDPOINT")
    )
    tracing_service_name: str = Field(
        default="mediafetch", validation_alias=AliasChoices("TRACING_SERVICE_NAME")
    )

    @field_validator("redact_log_fields")
    @classmethod
    def parse_comma_separated(cls, v: Union[List[str], str]) -> List[str]:
        """Parse comma-separated string values into lists.

        Args:
            v: Input value which can be a string or list

        Returns:
            List of stripped, non-empty items
        """
        if isinstance(v, str):
            if v.strip() == "":
                return []
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator(
        "cache_default_ttl",
        "cache_check_period",
        "image_default_max_age",
        "image_cache_version",
        "pool_max_keepalive_connections",
        "pool_max_connections",
    )
    @classmethod
    def require_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be positive, got {v}")
        return v

    @field_validator("cache_rolling_buffer")
    @classmethod
    def require_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"must not be negative, got {v}")
        return v

    @field_validator("cache_max_keys")
    @classmethod
    def validate_max_keys(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError(f"must be positive when set, got {v}")
        return v

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not self.image_cache_dir:
            self.image_cache_dir = os.path.join(
                self.config_directory, "cache", "images"
            )
