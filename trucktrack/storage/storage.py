"""Object storage for receipt images.

Two backends share the ``ObjectStorage`` protocol: Supabase Storage over its
REST API, and a local directory for development.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import httpx

from trucktrack.config import StorageConfig

logger = logging.getLogger(__name__)


class StorageUploadError(Exception):
    """Raised when an object cannot be stored."""

    pass


class ObjectStorage(Protocol):
    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        """Store content at path and return its public URL."""
        ...


class SupabaseStorage:
    """Uploads to a Supabase Storage bucket and returns the public URL."""

    def __init__(self, base_url: str, service_key: str, bucket: str = "receipts") -> None:
        self._base_url = base_url.rstrip("/")
        self._service_key = service_key
        self._bucket = bucket

    def public_url(self, path: str) -> str:
        return f"{self._base_url}/storage/v1/object/public/{self._bucket}/{path}"

    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        url = f"{self._base_url}/storage/v1/object/{self._bucket}/{path}"
        headers = {
            "Authorization": f"Bearer {self._service_key}",
            "apikey": self._service_key,
            "Content-Type": content_type,
            "cache-control": "3600",
            "x-upsert": "false",
        }
        async with httpx.AsyncClient(verify=True) as client:
            resp = await client.post(url, content=content, headers=headers, timeout=30.0)

        if resp.status_code >= 300:
            logger.error("Supabase upload of %s failed: %s %s", path, resp.status_code, resp.text)
            raise StorageUploadError(f"Failed to upload image: {resp.status_code}")
        return self.public_url(path)


class LocalObjectStorage:
    """Writes objects under a directory; never overwrites an existing file."""

    def __init__(self, root: str, public_base_url: str | None = None) -> None:
        self.root = Path(root)
        self._public_base_url = (public_base_url or self.root.resolve().as_uri()).rstrip("/")

    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        target = self.root / path
        if target.exists():
            raise StorageUploadError(f"Object already exists: {path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            raise StorageUploadError(f"Failed to upload image: {exc}") from exc
        return f"{self._public_base_url}/{path}"


def build_storage(config: StorageConfig) -> ObjectStorage:
    if config.supabase_url and config.supabase_service_key:
        return SupabaseStorage(config.supabase_url, config.supabase_service_key, config.bucket)
    logger.info("Supabase not configured, storing receipts under %s", config.local_dir)
    return LocalObjectStorage(config.local_dir, config.public_base_url)
