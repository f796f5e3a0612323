"""
Image Metadata Helpers

- Request path sanitation (percent-decoding, traversal rejection)
- Content-Type resolution from the file extension
- ETag generation (version- or content-based) and If-None-Match comparison
"""

import hashlib
import re
from typing import Optional
from urllib.parse import unquote

from .errors import InvalidPathError

# Extension to content-type mapping
EXTENSION_TO_MIME = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
    "svg": "image/svg+xml",
}

DEFAULT_CONTENT_TYPE = "image/jpeg"

_CONTROL_CHAR_RE = re.compile(r"[\x00-\x1f\x7f]")


def _check_segment(segment: str) -> None:
    # A segment that would turn into a separator or dot segment if some
    # later layer decoded it again is treated as a traversal attempt.
    redecoded = unquote(segment)
    if redecoded in (".", ".."):
        raise InvalidPathError("Path traversal is not allowed")
    if "/" in redecoded or "\\" in redecoded:
        raise InvalidPathError("Encoded path separators are not allowed")
    if _CONTROL_CHAR_RE.search(redecoded):
        raise InvalidPathError("Control characters are not allowed in image paths")


def sanitize_path(raw_path: Optional[str], namespace: str = "") -> str:
    """
    Turn a still-encoded request path into a backing store key.

    The path is percent-decoded exactly once and normalized segment by
    segment, so a key may contain a literal ``%`` (sent as ``%25``).
    Any ".." segment is rejected rather than stripped, so the resulting
    key always lives under ``namespace``.

    Raises:
        InvalidPathError: empty path, traversal attempt, or encoding tricks.
    """
    decoded = unquote(raw_path or "")

    if _CONTROL_CHAR_RE.search(decoded):
        raise InvalidPathError("Control characters are not allowed in image paths")

    segments = []
    for segment in decoded.replace("\\", "/").split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            raise InvalidPathError("Path traversal is not allowed")
        _check_segment(segment)
        segments.append(segment)

    if not segments:
        raise InvalidPathError("Image path required")

    key = "/".join(segments)
    namespace = namespace.strip("/")
    return f"{namespace}/{key}" if namespace else key


def content_type_for(key: str) -> str:
    """Resolve the MIME type from the key's extension (unknown -> image/jpeg)."""
    filename = key.rsplit("/", 1)[-1]
    if "." not in filename:
        return DEFAULT_CONTENT_TYPE
    ext = filename.rsplit(".", 1)[-1].lower()
    return EXTENSION_TO_MIME.get(ext, DEFAULT_CONTENT_TYPE)


def build_etag(key: str, size: int, timestamp: float) -> str:
    """Strong ETag for one stored version of an object."""
    version = f"{key}|{size}|{int(timestamp * 1000)}"
    digest = hashlib.sha256(version.encode("utf-8")).hexdigest()[:32]
    return f'"{digest}"'


def content_etag(key: str, data: bytes) -> str:
    """
    Strong ETag derived from the bytes themselves.

    Used for objects too large to cache, which have no stored version
    timestamp; identical content always yields the same tag.
    """
    content_digest = hashlib.sha256(data).hexdigest()
    version = f"{key}|{len(data)}|{content_digest}"
    digest = hashlib.sha256(version.encode("utf-8")).hexdigest()[:32]
    return f'"{digest}"'


def _opaque_tag(tag: str) -> str:
    tag = tag.strip()
    if tag.startswith("W/"):
        tag = tag[2:]
    return tag


def etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    """
    Weak comparison of an If-None-Match header against an ETag.

    Accepts a single tag, a comma-separated list, or "*".
    """
    if not if_none_match:
        return False
    if if_none_match.strip() == "*":
        return True

    target = _opaque_tag(etag)
    return any(
        _opaque_tag(candidate) == target
        for candidate in if_none_match.split(",")
        if candidate.strip()
    )
