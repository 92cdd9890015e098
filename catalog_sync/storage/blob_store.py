# catalog_sync/storage/blob_store.py
# Upload-by-key + public URL for re-hosted product media.
from __future__ import annotations

import logging
import os
import pathlib
from typing import Optional

import httpx

from catalog_sync.config import settings

logger = logging.getLogger(__name__)


class BlobStoreError(Exception):
    pass


class LocalBlobStore:
    """Writes under <root>/<bucket>/<key>; served at <public_url>/<bucket>/<key>."""

    def __init__(self, root: str, public_url: str, bucket: str = "product-media"):
        self.root = pathlib.Path(root)
        self.public_url = public_url.rstrip("/")
        self.bucket = bucket

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        path = self.root / self.bucket / key
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise BlobStoreError(f"local write failed for {key}: {e}") from e
        return self.public_url_for(key)

    def public_url_for(self, key: str) -> str:
        return f"{self.public_url}/{self.bucket}/{key}"


class HttpBlobStore:
    """PUT <base>/<bucket>/<key> with a bearer token (S3-compatible gateways)."""

    def __init__(
        self,
        base_url: str,
        public_url: str,
        bucket: str = "product-media",
        token: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.public_url = public_url.rstrip("/")
        self.bucket = bucket
        self.token = token
        self.timeout = timeout
        self._transport = transport

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        headers = {"Content-Type": content_type or "application/octet-stream", "x-upsert": "true"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        url = f"{self.base_url}/{self.bucket}/{key}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.put(url, content=data, headers=headers)
        except httpx.HTTPError as e:
            raise BlobStoreError(f"upload failed for {key}: {e}") from e
        if resp.status_code >= 300:
            raise BlobStoreError(f"upload failed for {key}: HTTP {resp.status_code}")
        return self.public_url_for(key)

    def public_url_for(self, key: str) -> str:
        return f"{self.public_url}/{self.bucket}/{key}"


def build_blob_store():
    if settings.BLOB_BACKEND == "http":
        if not settings.BLOB_HTTP_URL:
            raise BlobStoreError("BLOB_BACKEND=http requires BLOB_HTTP_URL")
        return HttpBlobStore(
            settings.BLOB_HTTP_URL,
            settings.BLOB_PUBLIC_URL or settings.BLOB_HTTP_URL,
            bucket=settings.BLOB_BUCKET,
            token=settings.BLOB_HTTP_TOKEN,
        )
    os.makedirs(settings.BLOB_LOCAL_DIR, exist_ok=True)
    return LocalBlobStore(settings.BLOB_LOCAL_DIR, settings.BLOB_PUBLIC_URL, bucket=settings.BLOB_BUCKET)


def get_blob_store():
    """FastAPI dependency; tests override it with a temp-dir store."""
    return build_blob_store()
