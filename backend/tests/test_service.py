"""
Image Proxy Service 测试

Exercises serve() directly: cache hits and misses, conditional requests,
error mapping, timeouts and per-request observability.

运行测试：
    cd backend
    pytest tests/test_service.py -v
"""

import asyncio
import json
import logging

import pytest

from image_proxy.cache_store import ImageCacheStore
from image_proxy.config import ImageProxyConfig
from image_proxy.errors import (
    StorageAccessDeniedError,
    StorageError,
    StorageNotFoundError,
    StorageTimeoutError,
)
from image_proxy.service import ImageProxyService
from image_proxy.storage import InMemoryObjectStore

from conftest import BANNER_BYTES, LOGO_BYTES, SUNSET_BYTES


class SlowStore(InMemoryObjectStore):
    """In-memory store that waits before answering."""

    def __init__(self, objects, delay: float):
        super().__init__(objects)
        self.delay = delay

    async def exists(self, key):
        await asyncio.sleep(self.delay)
        return await super().exists(key)


class FlakyDownloadStore(InMemoryObjectStore):
    """exists() works, download_bytes() raises the configured error."""

    def __init__(self, objects, error: Exception):
        super().__init__(objects)
        self.error = error

    async def download_bytes(self, key):
        self.download_calls += 1
        raise self.error


def error_body(response):
    return json.loads(response.body)


# ============================================
# 1. Miss then hit
# ============================================

class TestServeMissAndHit:
    """缓存未命中 / 命中"""

    @pytest.mark.asyncio
    async def test_first_request_is_miss(self, service):
        response = await service.serve("hero/sunset.jpg")

        assert response.status_code == 200
        assert response.body == SUNSET_BYTES
        assert response.headers["x-cache"] == "MISS"
        assert response.headers["content-type"] == "image/jpeg"
        assert response.headers["content-length"] == str(len(SUNSET_BYTES))
        assert response.headers["cache-control"] == "public, max-age=86400, immutable"
        assert response.headers["vary"] == "Accept-Encoding"
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["content-security-policy"] == "default-src 'none'"
        assert response.headers["etag"].startswith('"')

    @pytest.mark.asyncio
    async def test_second_request_is_hit(self, service, store):
        first = await service.serve("hero/sunset.jpg")
        second = await service.serve("hero/sunset.jpg")

        assert second.status_code == 200
        assert second.headers["x-cache"] == "HIT"
        assert second.body == first.body
        assert second.headers["cache-control"] == "public, max-age=86400"
        assert second.headers["content-length"] == str(len(SUNSET_BYTES))
        assert store.download_calls == 1

    @pytest.mark.asyncio
    async def test_repeated_hits_are_identical(self, service):
        await service.serve("global/logo.png")
        responses = [await service.serve("global/logo.png") for _ in range(5)]

        assert all(r.headers["x-cache"] == "HIT" for r in responses)
        assert all(r.body == LOGO_BYTES for r in responses)
        assert all(r.headers["content-type"] == "image/png" for r in responses)

    @pytest.mark.asyncio
    async def test_hit_and_miss_share_etag(self, service):
        miss = await service.serve("hero/sunset.jpg")
        hit = await service.serve("hero/sunset.jpg")
        assert miss.headers["etag"] == hit.headers["etag"]

    @pytest.mark.asyncio
    async def test_encoded_path_uses_same_cache_key(self, service, store):
        await service.serve("hero%2Fsunset.jpg")
        response = await service.serve("/hero/sunset.jpg")
        assert response.headers["x-cache"] == "HIT"
        assert store.download_calls == 1

    @pytest.mark.asyncio
    async def test_expired_entry_is_refetched(self, service, store, fake_clock):
        await service.serve("hero/sunset.jpg")
        fake_clock.advance(60)

        response = await service.serve("hero/sunset.jpg")

        assert response.headers["x-cache"] == "MISS"
        assert store.download_calls == 2

    @pytest.mark.asyncio
    async def test_oversize_object_is_never_cached(self, service, store):
        first = await service.serve("hero/banner.jpg")
        second = await service.serve("hero/banner.jpg")

        assert first.body == BANNER_BYTES
        assert second.headers["x-cache"] == "MISS"
        assert "hero/banner.jpg" not in service.cache
        assert store.download_calls == 2

    @pytest.mark.asyncio
    async def test_unknown_extension_served_as_jpeg(self, service, store):
        store.put("raw/scan.tiff", b"II*\x00")
        response = await service.serve("raw/scan.tiff")
        assert response.headers["content-type"] == "image/jpeg"


# ============================================
# 2. Conditional requests
# ============================================

class TestConditionalGet:
    """If-None-Match / 304"""

    @pytest.mark.asyncio
    async def test_matching_etag_on_hit_returns_304(self, service):
        first = await service.serve("hero/sunset.jpg")
        etag = first.headers["etag"]

        response = await service.serve("hero/sunset.jpg", if_none_match=etag)

        assert response.status_code == 304
        assert response.body == b""
        assert response.headers["etag"] == etag
        assert response.headers["x-cache"] == "HIT"

    @pytest.mark.asyncio
    async def test_stale_etag_on_hit_returns_200(self, service):
        await service.serve("hero/sunset.jpg")
        response = await service.serve("hero/sunset.jpg", if_none_match='"something-else"')
        assert response.status_code == 200
        assert response.body == SUNSET_BYTES

    @pytest.mark.asyncio
    async def test_matching_etag_on_miss_returns_304(self, service, store):
        # Banner is too large to cache, so every request takes the miss path
        first = await service.serve("hero/banner.jpg")
        response = await service.serve("hero/banner.jpg", if_none_match=first.headers["etag"])

        assert response.status_code == 304
        assert response.body == b""
        assert response.headers["x-cache"] == "MISS"
        assert store.download_calls == 2

    @pytest.mark.asyncio
    async def test_etag_after_refetch_differs(self, service, fake_clock):
        first = await service.serve("hero/sunset.jpg")
        fake_clock.advance(60)
        response = await service.serve("hero/sunset.jpg", if_none_match=first.headers["etag"])

        assert response.status_code == 200
        assert response.headers["etag"] != first.headers["etag"]

    @pytest.mark.asyncio
    async def test_uncached_etag_survives_time(self, service, fake_clock):
        """测试：不缓存的大文件按内容生成 ETag，时间推移后仍可 304"""
        first = await service.serve("hero/banner.jpg")
        fake_clock.advance(3600)

        response = await service.serve("hero/banner.jpg", if_none_match=first.headers["etag"])

        assert response.status_code == 304
        assert response.headers["etag"] == first.headers["etag"]

    @pytest.mark.asyncio
    async def test_uncached_etag_changes_with_content(self, service, store):
        first = await service.serve("hero/banner.jpg")
        store.put("hero/banner.jpg", BANNER_BYTES[:-1] + b"\x02")

        response = await service.serve("hero/banner.jpg", if_none_match=first.headers["etag"])

        assert response.status_code == 200
        assert response.headers["etag"] != first.headers["etag"]


# ============================================
# 3. Errors
# ============================================

class TestErrors:
    """错误映射"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", [
        "../../etc/passwd",
        "..%2F..%2Fetc%2Fpasswd",
        "%2e%2e/%2e%2e/etc/passwd",
    ])
    async def test_traversal_is_400(self, service, store, path):
        response = await service.serve(path)

        assert response.status_code == 400
        assert error_body(response)["error"] == "invalid_path"
        assert store.exists_calls == 0

    @pytest.mark.asyncio
    async def test_empty_path_is_400(self, service):
        response = await service.serve("")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_object_is_404(self, service):
        response = await service.serve("hero/missing.jpg")

        assert response.status_code == 404
        assert response.headers["x-cache"] == "ERROR"
        body = error_body(response)
        assert body == {"success": False, "error": "not_found", "detail": "Image not found"}

    @pytest.mark.asyncio
    async def test_exists_failure_is_404(self, service, store):
        store.failures["hero/sunset.jpg"] = StorageError("transport exploded")
        response = await service.serve("hero/sunset.jpg")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_exists_access_denied_is_403(self, service, store):
        store.failures["hero/sunset.jpg"] = StorageAccessDeniedError("forbidden")
        response = await service.serve("hero/sunset.jpg")

        assert response.status_code == 403
        assert error_body(response)["error"] == "access_denied"

    @pytest.mark.asyncio
    async def test_exists_timeout_is_500(self, service, store):
        store.failures["hero/sunset.jpg"] = StorageTimeoutError("slow")
        response = await service.serve("hero/sunset.jpg")
        assert response.status_code == 500

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error, status", [
        (StorageError("connection reset"), 500),
        (StorageTimeoutError("timeout"), 500),
        (RuntimeError("unexpected"), 500),
        (StorageAccessDeniedError("forbidden"), 403),
        (StorageNotFoundError("deleted meanwhile"), 404),
    ])
    async def test_download_failures(self, config, cache, fake_clock, error, status):
        store = FlakyDownloadStore({"hero/sunset.jpg": SUNSET_BYTES}, error)
        service = ImageProxyService(store, config=config, cache=cache)

        response = await service.serve("hero/sunset.jpg")

        assert response.status_code == status
        assert "hero/sunset.jpg" not in service.cache
        body = error_body(response)
        assert body["success"] is False
        assert "Traceback" not in body["detail"]

    @pytest.mark.asyncio
    async def test_hanging_store_is_bounded_by_timeout(self, cache, fake_clock):
        config = ImageProxyConfig(storage_backend="memory", storage_timeout_seconds=0.05)
        store = SlowStore({"hero/sunset.jpg": SUNSET_BYTES}, delay=5)
        service = ImageProxyService(store, config=config, cache=cache)

        response = await service.serve("hero/sunset.jpg")

        assert response.status_code == 500
        assert error_body(response)["error"] == "backing_store_failure"


# ============================================
# 4. Concurrency / observability
# ============================================

class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_misses_on_same_key(self, config, cache, fake_clock):
        store = SlowStore({"hero/sunset.jpg": SUNSET_BYTES}, delay=0.01)
        service = ImageProxyService(store, config=config, cache=cache)

        responses = await asyncio.gather(*[service.serve("hero/sunset.jpg") for _ in range(5)])

        assert all(r.status_code == 200 for r in responses)
        assert all(r.body == SUNSET_BYTES for r in responses)
        assert len(service.cache) == 1
        assert service.cache.lookup("hero/sunset.jpg").data == SUNSET_BYTES


class TestObservability:

    @pytest.mark.asyncio
    async def test_counters(self, service):
        await service.serve("hero/sunset.jpg")
        hit = await service.serve("hero/sunset.jpg")
        await service.serve("hero/sunset.jpg", if_none_match=hit.headers["etag"])
        await service.serve("hero/missing.jpg")

        proxy = service.stats()["proxy"]
        assert proxy["requests"] == 4
        assert proxy["misses"] == 1
        assert proxy["hits"] == 1
        assert proxy["not_modified"] == 1
        assert proxy["errors"] == 1
        assert proxy["bytes_served"] == 2 * len(SUNSET_BYTES)

    @pytest.mark.asyncio
    async def test_request_is_logged(self, service, caplog):
        caplog.set_level(logging.INFO, logger="image_proxy.service")
        await service.serve("hero/sunset.jpg")

        messages = [r.getMessage() for r in caplog.records]
        assert any("MISS hero/sunset.jpg (2048 bytes)" in m for m in messages)

    @pytest.mark.asyncio
    async def test_slow_response_is_flagged_not_errored(self, cache, fake_clock, caplog):
        caplog.set_level(logging.INFO, logger="image_proxy.service")
        config = ImageProxyConfig(storage_backend="memory", slow_response_ms=1)
        store = SlowStore({"hero/sunset.jpg": SUNSET_BYTES}, delay=0.02)
        service = ImageProxyService(store, config=config, cache=cache)

        response = await service.serve("hero/sunset.jpg")

        assert response.status_code == 200
        assert service.stats()["proxy"]["slow_responses"] == 1
        slow = [r for r in caplog.records if "Slow image response" in r.getMessage()]
        assert slow and all(r.levelno == logging.WARNING for r in slow)
        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]


class TestDefaults:

    @pytest.mark.asyncio
    async def test_injected_empty_cache_is_kept(self, store, config, fake_clock):
        """测试：注入的空缓存不会被替换"""
        cache = ImageCacheStore(ttl_seconds=60, clock=fake_clock)
        assert len(cache) == 0

        service = ImageProxyService(store, config=config, cache=cache)
        assert service.cache is cache

        await service.serve("hero/sunset.jpg")
        assert "hero/sunset.jpg" in cache

        fake_clock.advance(60)
        assert (await service.serve("hero/sunset.jpg")).headers["x-cache"] == "MISS"

    @pytest.mark.asyncio
    async def test_default_cache_uses_config_limits(self):
        config = ImageProxyConfig(
            storage_backend="memory",
            max_cache_total_size=2048,
            max_cacheable_file_size=1024,
            cache_ttl_seconds=5,
        )
        service = ImageProxyService(InMemoryObjectStore(), config=config)

        assert isinstance(service.cache, ImageCacheStore)
        assert service.cache.max_total_size == 2048
        assert service.cache.max_file_size == 1024
        assert service.cache.ttl_seconds == 5

    @pytest.mark.asyncio
    async def test_namespace_confines_keys(self, cache, fake_clock):
        config = ImageProxyConfig(storage_backend="memory", namespace="portfolio")
        store = InMemoryObjectStore({
            "portfolio/hero/sunset.jpg": SUNSET_BYTES,
            "secret.jpg": b"nope",
        })
        service = ImageProxyService(store, config=config, cache=cache)

        assert (await service.serve("hero/sunset.jpg")).status_code == 200
        assert (await service.serve("secret.jpg")).status_code == 404
        assert (await service.serve("../secret.jpg")).status_code == 400
