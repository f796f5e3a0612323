"""
Image Proxy 测试配置文件

Fixtures shared by the image proxy tests:
- fake_clock: controllable time source for TTL tests
- store: in-memory object store seeded with a few images
- service / client: proxy service with an empty cache, and a TestClient
"""

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# 添加 backend 目录到 Python 路径
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from image_proxy.app import create_app
from image_proxy.cache_store import ImageCacheStore
from image_proxy.config import ImageProxyConfig
from image_proxy.service import ImageProxyService
from image_proxy.storage import InMemoryObjectStore

KB = 1024

SUNSET_BYTES = bytes(range(256)) * 8          # 2 KB
LOGO_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 500
BANNER_BYTES = b"\xff\xd8\xff" + b"\x01" * (8 * KB)


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def config():
    """
    Small limits so eviction and oversize paths are easy to hit:
    4 KB per image, 16 KB in total, 60 second TTL.
    """
    return ImageProxyConfig(
        max_cache_total_size=16 * KB,
        max_cacheable_file_size=4 * KB,
        cache_ttl_seconds=60,
        storage_backend="memory",
        storage_timeout_seconds=1.0,
    )


@pytest.fixture
def store():
    return InMemoryObjectStore({
        "hero/sunset.jpg": SUNSET_BYTES,
        "global/logo.png": LOGO_BYTES,
        "hero/banner.jpg": BANNER_BYTES,
    })


@pytest.fixture
def cache(config, fake_clock):
    return ImageCacheStore(
        max_total_size=config.max_cache_total_size,
        max_file_size=config.max_cacheable_file_size,
        ttl_seconds=config.cache_ttl_seconds,
        clock=fake_clock,
    )


@pytest.fixture
def service(store, config, cache):
    return ImageProxyService(store, config=config, cache=cache)


@pytest.fixture
def client(service):
    return TestClient(create_app(service=service))
