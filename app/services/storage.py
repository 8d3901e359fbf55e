"""Blob store access (Google Cloud Storage): downloads and short-lived signed URLs.

The GCS SDK is synchronous; calls run through asyncio.to_thread so the event
loop (API requests, concurrent ticks) is never blocked.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Optional

import httpx
from google.cloud import storage

logger = logging.getLogger(__name__)


class BlobStoreError(Exception):
    """Download or signed-URL failure."""


class GCSBlobStore:
    def __init__(self, client: Optional[storage.Client] = None):
        self._client = client

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client()
        return self._client

    def _blob(self, bucket: str, path: str):
        return self.client.bucket(bucket).blob(path.lstrip("/"))

    async def download(self, bucket: str, path: str) -> bytes:
        """Download the object's bytes."""
        try:
            return await asyncio.to_thread(self._blob(bucket, path).download_as_bytes)
        except Exception as e:
            logger.error("GCS download failed for gs://%s/%s: %s", bucket, path, e)
            raise BlobStoreError(f"Unable to download gs://{bucket}/{path}: {e}") from e

    async def signed_url(self, bucket: str, path: str, ttl_seconds: int = 180) -> str:
        """V4 signed GET URL valid for *ttl_seconds*."""
        try:
            return await asyncio.to_thread(
                self._blob(bucket, path).generate_signed_url,
                version="v4",
                expiration=timedelta(seconds=ttl_seconds),
                method="GET",
            )
        except Exception as e:
            logger.error("GCS signed URL failed for gs://%s/%s: %s", bucket, path, e)
            raise BlobStoreError(f"Unable to generate signed URL for gs://{bucket}/{path}: {e}") from e

    async def fetch(self, url: str, timeout: float = 60.0) -> bytes:
        """Download bytes from a (signed) URL with a bounded timeout."""
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                resp = await client.get(url)
        except httpx.HTTPError as e:
            raise BlobStoreError(f"Failed to download PDF: {type(e).__name__}: {e}") from e
        if not resp.is_success:
            raise BlobStoreError(f"Failed to download PDF: {resp.status_code} {resp.reason_phrase}")
        return resp.content


_blob_store: Optional[GCSBlobStore] = None


def get_blob_store() -> GCSBlobStore:
    """Process-wide blob store (lazy GCS client)."""
    global _blob_store
    if _blob_store is None:
        _blob_store = GCSBlobStore()
    return _blob_store
