"""
Image Proxy Errors

Two layers:
- Storage errors, raised by backing store accessors
- Proxy errors, each mapped to one HTTP status code
"""


class ConfigError(ValueError):
    """Invalid image proxy configuration."""


# ============================================
# Backing store errors
# ============================================

class StorageError(Exception):
    """Any failure reported by a backing store accessor."""


class StorageNotFoundError(StorageError):
    """The object does not exist in the backing store."""


class StorageAccessDeniedError(StorageError):
    """The backing store refused access to the object."""


class StorageTimeoutError(StorageError):
    """The backing store did not answer in time."""


# ============================================
# Proxy errors (HTTP taxonomy)
# ============================================

class ImageProxyError(Exception):
    """Base class for failures surfaced to HTTP clients."""
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.code

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.code,
            "detail": self.detail,
        }


class InvalidPathError(ImageProxyError):
    status_code = 400
    code = "invalid_path"


class AccessDeniedError(ImageProxyError):
    status_code = 403
    code = "access_denied"


class ObjectNotFoundError(ImageProxyError):
    status_code = 404
    code = "not_found"


class BackingStoreFailureError(ImageProxyError):
    status_code = 500
    code = "backing_store_failure"
