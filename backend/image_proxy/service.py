"""
Image Proxy Service

Serves images from the backing store through the in-memory cache:

    request path -> sanitize -> cache lookup
        hit:  respond from cache
        miss: exists -> download -> cache (small images only) -> respond

Backing store calls are never made while holding the cache lock, so two
concurrent misses on the same key may both fetch; the last insert wins.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Dict, Optional, TypeVar

from fastapi.responses import JSONResponse, Response

from .cache_store import CacheEntry, ImageCacheStore
from .config import ImageProxyConfig
from .errors import (
    AccessDeniedError,
    BackingStoreFailureError,
    ImageProxyError,
    ObjectNotFoundError,
    StorageAccessDeniedError,
    StorageNotFoundError,
    StorageTimeoutError,
)
from .metadata import build_etag, content_etag, content_type_for, etag_matches, sanitize_path
from .storage import BackingStoreAccessor

logger = logging.getLogger(__name__)

T = TypeVar("T")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "Content-Security-Policy": "default-src 'none'",
}

OUTCOME_HIT = "HIT"
OUTCOME_MISS = "MISS"
OUTCOME_NOT_MODIFIED = "NOT_MODIFIED"
OUTCOME_ERROR = "ERROR"


class ImageProxyService:
    """
    HTTP-level orchestration in front of a slow object store.

    Usage:
        service = ImageProxyService(store, config=ImageProxyConfig())
        response = await service.serve("hero/sunset.jpg", if_none_match=None)
    """

    def __init__(
        self,
        store: BackingStoreAccessor,
        config: Optional[ImageProxyConfig] = None,
        cache: Optional[ImageCacheStore] = None,
    ):
        self.config = config or ImageProxyConfig()
        self.store = store
        self.cache = cache if cache is not None else ImageCacheStore(
            max_total_size=self.config.max_cache_total_size,
            max_file_size=self.config.max_cacheable_file_size,
            ttl_seconds=self.config.cache_ttl_seconds,
        )

        self._counters: Dict[str, int] = {
            "requests": 0,
            "hits": 0,
            "misses": 0,
            "not_modified": 0,
            "errors": 0,
            "bytes_served": 0,
            "slow_responses": 0,
        }

    # ============================================
    # Request handling
    # ============================================

    async def serve(self, request_path: str, if_none_match: Optional[str] = None) -> Response:
        """
        Serve one image request.

        Always returns a well-formed response; backing store failures are
        mapped to 403/404/500 with a JSON error body.
        """
        start = time.perf_counter()
        key = request_path
        size = 0

        try:
            key = sanitize_path(request_path, self.config.namespace)

            entry = self.cache.lookup(key)
            if entry is not None:
                outcome = OUTCOME_HIT
                response = self._cached_response(entry, if_none_match)
            else:
                outcome = OUTCOME_MISS
                response = await self._fetch_response(key, if_none_match)

            if response.status_code == 304:
                outcome = OUTCOME_NOT_MODIFIED
            else:
                size = len(response.body)

        except ImageProxyError as e:
            outcome = OUTCOME_ERROR
            response = self._error_response(e)
            log = logger.error if e.status_code >= 500 else logger.info
            log(f"[ImageProxy] {e.code} for {key}: {e.detail}")

        except Exception:
            outcome = OUTCOME_ERROR
            logger.exception(f"[ImageProxy] Unexpected failure serving {key}")
            response = self._error_response(BackingStoreFailureError("Failed to serve image"))

        self._record(key, outcome, size, (time.perf_counter() - start) * 1000)
        return response

    def _cached_response(self, entry: CacheEntry, if_none_match: Optional[str]) -> Response:
        etag = build_etag(entry.key, entry.size, entry.inserted_at)
        cache_control = f"public, max-age={self.config.browser_max_age}"

        if etag_matches(if_none_match, etag):
            return self._not_modified(etag, cache_control, OUTCOME_HIT)

        return Response(
            content=entry.data,
            media_type=entry.content_type,
            headers={
                "Cache-Control": cache_control,
                "ETag": etag,
                "X-Cache": OUTCOME_HIT,
                "Vary": "Accept-Encoding",
                **SECURITY_HEADERS,
            },
        )

    async def _fetch_response(self, key: str, if_none_match: Optional[str]) -> Response:
        data = await self._fetch(key)
        content_type = content_type_for(key)

        # Cached objects take their version from the cache entry so that
        # later HITs hand out the same ETag as this MISS. Uncached objects
        # are versioned by content so conditional requests still revalidate.
        entry = self.cache.insert(key, data, content_type)
        if entry is not None:
            etag = build_etag(key, entry.size, entry.inserted_at)
        else:
            etag = content_etag(key, data)
        cache_control = f"public, max-age={self.config.browser_max_age}, immutable"

        if etag_matches(if_none_match, etag):
            return self._not_modified(etag, cache_control, OUTCOME_MISS)

        return Response(
            content=data,
            media_type=content_type,
            headers={
                "Cache-Control": cache_control,
                "ETag": etag,
                "X-Cache": OUTCOME_MISS,
                "Vary": "Accept-Encoding",
                **SECURITY_HEADERS,
            },
        )

    async def _fetch(self, key: str) -> bytes:
        """Existence check then download, with storage errors mapped to HTTP errors."""
        try:
            found = await self._call_store(self.store.exists(key))
        except StorageAccessDeniedError as e:
            raise AccessDeniedError("Access denied") from e
        except StorageTimeoutError as e:
            raise BackingStoreFailureError("Image storage timed out") from e
        except Exception as e:
            logger.warning(f"[ImageProxy] Existence check failed for {key}: {e}")
            raise ObjectNotFoundError("Image not found") from e

        if not found:
            raise ObjectNotFoundError("Image not found")

        logger.debug(f"[ImageProxy] Downloading: {key}")
        try:
            return await self._call_store(self.store.download_bytes(key))
        except StorageNotFoundError as e:
            raise ObjectNotFoundError("Image not found") from e
        except StorageAccessDeniedError as e:
            raise AccessDeniedError("Access denied") from e
        except Exception as e:
            logger.error(f"[ImageProxy] Download failed for {key}: {e}")
            raise BackingStoreFailureError("Failed to download image from storage") from e

    async def _call_store(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.config.storage_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise StorageTimeoutError("Backing store call timed out") from e

    # ============================================
    # Responses
    # ============================================

    @staticmethod
    def _not_modified(etag: str, cache_control: str, cache_status: str) -> Response:
        return Response(
            status_code=304,
            headers={
                "Cache-Control": cache_control,
                "ETag": etag,
                "X-Cache": cache_status,
                "Vary": "Accept-Encoding",
            },
        )

    @staticmethod
    def _error_response(error: ImageProxyError) -> JSONResponse:
        return JSONResponse(
            status_code=error.status_code,
            content=error.to_dict(),
            headers={
                "Cache-Control": "no-store",
                "X-Cache": OUTCOME_ERROR,
                "X-Content-Type-Options": "nosniff",
            },
        )

    # ============================================
    # Observability
    # ============================================

    def _record(self, key: str, outcome: str, size: int, elapsed_ms: float) -> None:
        counters = self._counters
        counters["requests"] += 1
        if outcome == OUTCOME_HIT:
            counters["hits"] += 1
        elif outcome == OUTCOME_MISS:
            counters["misses"] += 1
        elif outcome == OUTCOME_NOT_MODIFIED:
            counters["not_modified"] += 1
        else:
            counters["errors"] += 1
        counters["bytes_served"] += size

        logger.info(f"[ImageProxy] {outcome} {key} ({size} bytes) - {elapsed_ms:.1f}ms")

        if elapsed_ms > self.config.slow_response_ms:
            counters["slow_responses"] += 1
            logger.warning(f"[ImageProxy] Slow image response: {key} took {elapsed_ms:.0f}ms")

    def stats(self) -> Dict[str, Any]:
        """Proxy counters plus cache statistics."""
        return {
            "proxy": dict(self._counters),
            "cache": self.cache.stats(),
        }

    async def check_health(self) -> bool:
        try:
            return await self._call_store(self.store.check_health())
        except Exception as e:
            logger.error(f"[ImageProxy] Storage health check failed: {e}")
            return False

    async def close(self) -> None:
        await self.store.close()
