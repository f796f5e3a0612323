"""
Backing Store Accessors

The proxy only needs two calls from the object store:
    exists(key) -> bool
    download_bytes(key) -> bytes

Implementations:
- HttpObjectStore: remote object store over HTTP (httpx)
- LocalDirectoryStore: objects on the local filesystem (development)
- InMemoryObjectStore: dict-backed store (demos and tests)

Every failure is raised as a StorageError subclass.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Dict, Optional, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from .config import ImageProxyConfig
from .errors import (
    StorageAccessDeniedError,
    StorageError,
    StorageNotFoundError,
    StorageTimeoutError,
)

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL_SECONDS = 30.0


@runtime_checkable
class BackingStoreAccessor(Protocol):
    """Narrow contract the proxy depends on."""

    async def exists(self, key: str) -> bool:
        ...

    async def download_bytes(self, key: str) -> bytes:
        ...

    async def check_health(self) -> bool:
        ...

    async def close(self) -> None:
        ...


# ============================================
# HTTP object store
# ============================================

class HttpObjectStore:
    """
    Object store reachable over plain HTTP.

    Objects live at ``{base_url}/{key}``. HEAD answers existence,
    GET returns the bytes.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        token: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Accept": "image/*,*/*;q=0.8"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self.http_client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers=headers,
        )

        self._healthy = False
        self._last_health_check = 0.0

    def _object_url(self, key: str) -> str:
        return f"{self.base_url}/{quote(key, safe='/')}"

    async def exists(self, key: str) -> bool:
        response = await self._request("HEAD", key)
        if response.status_code == 404:
            return False
        self._raise_for_status(response, key)
        return True

    async def download_bytes(self, key: str) -> bytes:
        response = await self._request("GET", key)
        if response.status_code == 404:
            raise StorageNotFoundError(f"Object does not exist: {key}")
        self._raise_for_status(response, key)
        return response.content

    async def check_health(self) -> bool:
        """Probe the store root, caching a healthy verdict for 30 seconds."""
        now = time.monotonic()
        if self._healthy and now - self._last_health_check < HEALTH_CHECK_INTERVAL_SECONDS:
            return True

        try:
            response = await self.http_client.head(self.base_url + "/")
            self._healthy = response.status_code < 500
        except httpx.HTTPError as e:
            logger.error(f"[ObjectStore] Health check failed: {e}")
            self._healthy = False

        self._last_health_check = now
        return self._healthy

    async def close(self) -> None:
        """Close HTTP client."""
        await self.http_client.aclose()

    async def _request(self, method: str, key: str) -> httpx.Response:
        url = self._object_url(key)
        try:
            return await self.http_client.request(method, url)
        except httpx.TimeoutException as e:
            raise StorageTimeoutError(f"Timeout while fetching {key}") from e
        except httpx.HTTPError as e:
            raise StorageError(f"Transport error while fetching {key}: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response, key: str) -> None:
        if response.status_code in (401, 403):
            raise StorageAccessDeniedError(f"Access denied for {key}")
        if response.status_code >= 400:
            raise StorageError(f"Object store returned {response.status_code} for {key}")


# ============================================
# Local directory store
# ============================================

class LocalDirectoryStore:
    """Serves objects from a directory on disk."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def _resolve(self, key: str) -> Optional[Path]:
        path = (self.root / key).resolve()
        # Symlinks pointing outside the root are treated as absent
        if path != self.root and self.root not in path.parents:
            return None
        return path

    async def exists(self, key: str) -> bool:
        path = self._resolve(key)
        if path is None:
            return False
        return await asyncio.to_thread(path.is_file)

    async def download_bytes(self, key: str) -> bytes:
        path = self._resolve(key)
        if path is None:
            raise StorageNotFoundError(f"Object does not exist: {key}")
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise StorageNotFoundError(f"Object does not exist: {key}") from e
        except PermissionError as e:
            raise StorageAccessDeniedError(f"Access denied for {key}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    async def check_health(self) -> bool:
        return await asyncio.to_thread(self.root.is_dir)

    async def close(self) -> None:
        return None


# ============================================
# In-memory store
# ============================================

class InMemoryObjectStore:
    """
    Dict-backed object store.

    ``failures`` maps a key to the exception raised for it by both
    calls, which makes backing store outages easy to simulate.
    """

    def __init__(self, objects: Optional[Dict[str, bytes]] = None):
        self.objects: Dict[str, bytes] = dict(objects or {})
        self.failures: Dict[str, Exception] = {}
        self.exists_calls = 0
        self.download_calls = 0

    def put(self, key: str, data: bytes) -> None:
        self.objects[key] = bytes(data)

    def delete(self, key: str) -> bool:
        return self.objects.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        self.exists_calls += 1
        if key in self.failures:
            raise self.failures[key]
        return key in self.objects

    async def download_bytes(self, key: str) -> bytes:
        self.download_calls += 1
        if key in self.failures:
            raise self.failures[key]
        try:
            return self.objects[key]
        except KeyError:
            raise StorageNotFoundError(f"Object does not exist: {key}") from None

    async def check_health(self) -> bool:
        return True

    async def close(self) -> None:
        return None


def create_backing_store(config: ImageProxyConfig) -> BackingStoreAccessor:
    """Build the accessor selected by IMAGE_PROXY_STORAGE_BACKEND."""
    if config.storage_backend == "http":
        logger.info(f"[ObjectStore] Using HTTP object store: {config.storage_url}")
        return HttpObjectStore(
            config.storage_url,
            timeout=config.storage_timeout_seconds,
            token=config.storage_token,
        )
    if config.storage_backend == "memory":
        logger.info("[ObjectStore] Using in-memory object store")
        return InMemoryObjectStore()

    logger.info(f"[ObjectStore] Using local directory: {config.storage_root}")
    return LocalDirectoryStore(config.storage_root)
