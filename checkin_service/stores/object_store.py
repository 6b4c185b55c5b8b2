"""Upload bucket for source PDFs awaiting processing.

Methods are blocking (google-cloud-storage); call them via
``asyncio.to_thread`` from async code.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from google.cloud import storage

logger = logging.getLogger(__name__)


def gs_uri(bucket: str, name: str) -> str:
    return f"gs://{bucket}/{name}"


class GcsObjectStore:
    def __init__(self, client: storage.Client, bucket: str) -> None:
        self._client = client
        self._bucket_name = bucket

    @property
    def bucket_name(self) -> str:
        return self._bucket_name

    def presign_put(self, name: str, *, content_type: str, ttl_seconds: int) -> str:
        blob = self._client.bucket(self._bucket_name).blob(name)
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=ttl_seconds),
            method="PUT",
            content_type=content_type,
        )

    def exists(self, name: str) -> bool:
        return self._client.bucket(self._bucket_name).blob(name).exists()

    def download(self, name: str) -> bytes:
        return self._client.bucket(self._bucket_name).blob(name).download_as_bytes()

    def delete(self, name: str) -> None:
        self._client.bucket(self._bucket_name).blob(name).delete()

    def clear(self) -> int:
        """Delete every object in the bucket; returns the number removed."""
        deleted = 0
        for blob in self._client.list_blobs(self._bucket_name):
            blob.delete()
            deleted += 1
        logger.info("Cleared %d objects from %s", deleted, gs_uri(self._bucket_name, ""))
        return deleted

    def check_bucket(self) -> bool:
        try:
            return self._client.bucket(self._bucket_name).exists()
        except Exception:
            logger.warning("Bucket health check failed", exc_info=True)
            return False
