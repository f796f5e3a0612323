"""
Image Proxy Application

FastAPI app factory wiring the image routes and admin routes together.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .config import ImageProxyConfig
from .routes_fastapi import admin_router, build_service, router
from .service import ImageProxyService

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    config: Optional[ImageProxyConfig] = None,
    service: Optional[ImageProxyService] = None,
) -> FastAPI:
    """
    Create the image proxy app.

    Args:
        config: Settings; read from the environment when omitted
        service: Prebuilt service (tests); built from config when omitted
    """
    if config is None:
        config = service.config if service is not None else ImageProxyConfig.from_env()
    configure_logging(config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"[ImageProxy] Started (backend={config.storage_backend}, "
            f"cache={config.max_cache_total_size} bytes, ttl={config.cache_ttl_seconds}s)"
        )
        yield
        current = getattr(app.state, "image_proxy_service", None)
        if current is not None:
            await current.close()
        logger.info("[ImageProxy] Stopped")

    app = FastAPI(title="Image Proxy", version="1.0.0", lifespan=lifespan)
    app.state.image_proxy_service = service if service is not None else build_service(config)

    app.include_router(router)
    app.include_router(admin_router)
    return app
