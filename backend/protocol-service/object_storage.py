"""
Odontoplan Protocol Service - Generated Image Storage

Writes simulation images under a per-tenant prefix and returns the storage key.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from errors import StorageWriteError

logger = logging.getLogger(__name__)

_SAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._-]+")

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}


def _safe_segment(value: str) -> str:
    cleaned = _SAFE_SEGMENT.sub("_", value or "").strip("._")
    if not cleaned:
        raise StorageWriteError(f"Invalid storage path segment: {value!r}")
    return cleaned


class ObjectStorage:
    def write(self, tenant_id: str, name: str, data: bytes, content_type: str = "image/png") -> str:
        raise NotImplementedError


class InMemoryObjectStorage(ObjectStorage):
    def __init__(self) -> None:
        self.objects = {}

    def write(self, tenant_id: str, name: str, data: bytes, content_type: str = "image/png") -> str:
        key = f"{_safe_segment(tenant_id)}/{_safe_segment(name)}{_EXTENSIONS.get(content_type, '.bin')}"
        self.objects[key] = (data, content_type)
        return key


class LocalObjectStorage(ObjectStorage):
    def __init__(self, root: str) -> None:
        if not root:
            raise RuntimeError("Local object storage requires a non-empty root.")
        self.root = Path(root).expanduser().resolve()

    def write(self, tenant_id: str, name: str, data: bytes, content_type: str = "image/png") -> str:
        if not data:
            raise StorageWriteError("Refusing to store an empty image.")
        key = f"{_safe_segment(tenant_id)}/{_safe_segment(name)}{_EXTENSIONS.get(content_type, '.bin')}"
        target = self.root / key
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_suffix(target.suffix + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(target)
        except OSError as exc:
            raise StorageWriteError(f"Could not write {key}: {exc}") from exc
        logger.info("Stored generated image %s (%d bytes).", key, len(data))
        return key
