"""
Image Proxy Configuration

All settings come from environment variables with sensible defaults,
so the proxy runs without any environment at all.
"""

import os
from dataclasses import dataclass

from .errors import ConfigError

MIB = 1024 * 1024

STORAGE_BACKENDS = ("http", "local", "memory")


@dataclass(frozen=True)
class ImageProxyConfig:
    """Runtime settings for the image proxy."""
    # Cache limits
    max_cache_total_size: int = 50 * MIB      # Total bytes held in memory
    max_cacheable_file_size: int = 1 * MIB    # Larger objects are never cached
    cache_ttl_seconds: float = 30 * 60        # 30 minutes

    # Response settings
    browser_max_age: int = 86400              # Cache-Control max-age (24h)
    slow_response_ms: float = 1000.0          # Threshold for slow-response warnings

    # Key namespace every request is confined to ("" = store root)
    namespace: str = ""

    # Backing store
    storage_backend: str = "local"            # http, local or memory
    storage_url: str = ""
    storage_token: str = ""
    storage_root: str = "./images"
    storage_timeout_seconds: float = 30.0

    log_level: str = "INFO"

    def __post_init__(self):
        if self.max_cache_total_size <= 0:
            raise ConfigError("max_cache_total_size must be positive")
        if self.max_cacheable_file_size <= 0:
            raise ConfigError("max_cacheable_file_size must be positive")
        if self.max_cacheable_file_size > self.max_cache_total_size:
            raise ConfigError(
                "max_cacheable_file_size cannot exceed max_cache_total_size"
            )
        if self.cache_ttl_seconds <= 0:
            raise ConfigError("cache_ttl_seconds must be positive")
        if self.storage_timeout_seconds <= 0:
            raise ConfigError("storage_timeout_seconds must be positive")
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ConfigError(
                f"Unknown storage backend: {self.storage_backend}. "
                f"Use: {', '.join(STORAGE_BACKENDS)}"
            )
        if self.storage_backend == "http" and not self.storage_url:
            raise ConfigError("IMAGE_PROXY_STORAGE_URL is required for the http backend")

    @classmethod
    def from_env(cls) -> "ImageProxyConfig":
        """Build a config from IMAGE_PROXY_* environment variables."""
        return cls(
            max_cache_total_size=_int_env("IMAGE_PROXY_MAX_CACHE_TOTAL_SIZE", 50 * MIB),
            max_cacheable_file_size=_int_env("IMAGE_PROXY_MAX_CACHEABLE_FILE_SIZE", 1 * MIB),
            cache_ttl_seconds=_float_env("IMAGE_PROXY_CACHE_TTL_SECONDS", 30 * 60),
            browser_max_age=_int_env("IMAGE_PROXY_BROWSER_MAX_AGE", 86400),
            slow_response_ms=_float_env("IMAGE_PROXY_SLOW_RESPONSE_MS", 1000.0),
            namespace=os.getenv("IMAGE_PROXY_NAMESPACE", "").strip("/"),
            storage_backend=os.getenv("IMAGE_PROXY_STORAGE_BACKEND", "local").lower(),
            storage_url=os.getenv("IMAGE_PROXY_STORAGE_URL", ""),
            storage_token=os.getenv("IMAGE_PROXY_STORAGE_TOKEN", ""),
            storage_root=os.getenv("IMAGE_PROXY_STORAGE_ROOT", "./images"),
            storage_timeout_seconds=_float_env("IMAGE_PROXY_STORAGE_TIMEOUT", 30.0),
            log_level=os.getenv("IMAGE_PROXY_LOG_LEVEL", "INFO").upper(),
        )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
