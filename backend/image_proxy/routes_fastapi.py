"""
Image Proxy API Routes

Provides endpoints for:
- Serving images from the backing store (GET /images/{path})
- Cache statistics
- Cache management (cleanup, clear, single-key invalidation)
- Health check
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import ImageProxyConfig
from .errors import InvalidPathError
from .metadata import sanitize_path
from .service import ImageProxyService
from .storage import create_backing_store

logger = logging.getLogger(__name__)


# ============================================
# Service dependency
# ============================================

def build_service(config: ImageProxyConfig) -> ImageProxyService:
    """Create a proxy service with an empty cache and the configured store."""
    return ImageProxyService(create_backing_store(config), config=config)


def get_image_proxy_service(request: Request) -> ImageProxyService:
    """
    Return the app's proxy service, creating it on first use.

    Tests override this dependency to inject a fresh service.
    """
    service = getattr(request.app.state, "image_proxy_service", None)
    if service is None:
        service = build_service(ImageProxyConfig.from_env())
        request.app.state.image_proxy_service = service
    return service


def undecoded_path(request: Request, path: str, prefix: str) -> str:
    """
    The {path:path} parameter as the client sent it, still percent-encoded.

    The server has already decoded the route parameter once and
    sanitize_path decodes again, so the raw request target is used to keep
    it to a single decode. Keys may then contain a literal "%" (sent as %25).
    """
    raw_path = request.scope.get("raw_path")
    if raw_path:
        raw = raw_path.decode("latin-1").split("?", 1)[0]
        marker = prefix.rstrip("/") + "/"
        index = raw.find(marker)
        if index != -1:
            return raw[index + len(marker):]
    return quote(path, safe="/")


# ============================================
# Response Models
# ============================================

class StatsResponse(BaseModel):
    """Response model for stats endpoint"""
    success: bool
    stats: Dict[str, Any]


class CleanupResponse(BaseModel):
    """Response model for cleanup endpoint"""
    success: bool
    removed_entries: int
    current_stats: Dict[str, Any]


class ClearResponse(BaseModel):
    """Response model for clear endpoint"""
    success: bool
    removed_entries: int
    message: str


class InvalidateResponse(BaseModel):
    """Response model for single-key invalidation"""
    success: bool
    key: str
    removed: bool


class HealthResponse(BaseModel):
    """Response model for health endpoint"""
    status: str
    service: str
    storage_healthy: bool
    cache_stats: Dict[str, Any]


# ============================================
# Routers
# ============================================

router = APIRouter(prefix="/images", tags=["Images"])

admin_router = APIRouter(prefix="/api/image-proxy", tags=["Image Proxy"])


# ============================================
# Endpoints
# ============================================

@router.get("/{path:path}")
async def serve_image(
    request: Request,
    path: str,
    if_none_match: Optional[str] = Header(None),
    service: ImageProxyService = Depends(get_image_proxy_service),
):
    """
    Serve an image from the backing store.

    This endpoint:
    1. Sanitizes the path (traversal attempts get 400)
    2. Answers from the in-memory cache when possible
    3. Otherwise fetches from the backing store and caches small images
    4. Honors If-None-Match with 304 Not Modified

    Example:
        GET /images/hero/sunset.jpg
    """
    encoded = undecoded_path(request, path, router.prefix)
    return await service.serve(encoded, if_none_match=if_none_match)


@admin_router.get("/stats", response_model=StatsResponse)
async def get_cache_stats(service: ImageProxyService = Depends(get_image_proxy_service)):
    """
    Get proxy and cache statistics.

    Returns information about:
    - Hit / miss / error counters
    - Cache size usage
    - Configuration limits
    """
    return StatsResponse(success=True, stats=service.stats())


@admin_router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_cache(service: ImageProxyService = Depends(get_image_proxy_service)):
    """
    Remove expired entries and evict down to the size budget.

    This is automatically done before every insert,
    but can be triggered manually if needed.
    """
    removed = service.cache.cleanup()
    return CleanupResponse(
        success=True,
        removed_entries=removed,
        current_stats=service.cache.stats(),
    )


@admin_router.delete("/clear", response_model=ClearResponse)
async def clear_cache(service: ImageProxyService = Depends(get_image_proxy_service)):
    """
    Clear all cached images.

    Images are fetched from the backing store again on next request.
    """
    removed = service.cache.clear()
    return ClearResponse(
        success=True,
        removed_entries=removed,
        message="Cache cleared successfully",
    )


@admin_router.delete("/cache/{path:path}", response_model=InvalidateResponse)
async def invalidate_cached_image(
    request: Request,
    path: str,
    service: ImageProxyService = Depends(get_image_proxy_service),
):
    """Drop one image from the cache, e.g. after replacing it in the store."""
    try:
        encoded = undecoded_path(request, path, admin_router.prefix + "/cache")
        key = sanitize_path(encoded, service.config.namespace)
    except InvalidPathError as e:
        raise HTTPException(status_code=400, detail=e.detail)

    removed = service.cache.invalidate(key)
    logger.info(f"[ImageProxy] Invalidated {key} (cached={removed})")
    return InvalidateResponse(success=True, key=key, removed=removed)


@admin_router.get("/health", response_model=HealthResponse)
async def health_check(service: ImageProxyService = Depends(get_image_proxy_service)):
    """Health check endpoint."""
    storage_healthy = await service.check_health()
    health = HealthResponse(
        status="healthy" if storage_healthy else "degraded",
        service="image-proxy",
        storage_healthy=storage_healthy,
        cache_stats=service.cache.stats(),
    )
    return JSONResponse(
        status_code=200 if storage_healthy else 503,
        content=health.model_dump(),
    )
