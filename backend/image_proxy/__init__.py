"""
Image Proxy Module

Serves images from a remote object store with an in-memory cache
in front of it.

Features:
- TTL-based in-process cache with a total byte budget
- Oldest-first eviction, per-image size ceiling
- Path sanitation, ETag / If-None-Match handling
- Pluggable backing store (HTTP, local directory, in-memory)
"""

from .app import create_app
from .cache_store import CacheEntry, ImageCacheStore
from .config import ImageProxyConfig
from .routes_fastapi import admin_router, get_image_proxy_service, router
from .service import ImageProxyService
from .storage import (
    BackingStoreAccessor,
    HttpObjectStore,
    InMemoryObjectStore,
    LocalDirectoryStore,
)

__all__ = [
    "create_app",
    "CacheEntry",
    "ImageCacheStore",
    "ImageProxyConfig",
    "ImageProxyService",
    "BackingStoreAccessor",
    "HttpObjectStore",
    "InMemoryObjectStore",
    "LocalDirectoryStore",
    "router",
    "admin_router",
    "get_image_proxy_service",
]
