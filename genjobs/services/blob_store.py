"""Blob storage for intermediate and final assets."""

import logging
import os
from datetime import datetime, timezone
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


def blob_key(job_id: str, step: str, name: str) -> str:
    """Build a fresh, per-attempt key so re-executed steps never overwrite."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    return f"{job_id}/{step}/{stamp}-{name}"


class BlobStore:
    """Read/write contract for asset bytes."""

    def read(self, url: str) -> bytes:
        raise NotImplementedError

    def write(self, key: str, data: bytes, content_type: str = "image/png") -> str:
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    """Blob store backed by a local directory.

    URLs it hands out look like ``blob://<key>``. Remote ``http(s)`` URLs
    (the caller's original uploads) are fetched with httpx.
    """

    def __init__(self, root: str, url_prefix: str = "blob://", timeout: float = 60.0):
        self.root = root
        self.url_prefix = url_prefix
        self.timeout = timeout

    def _path(self, key: str) -> str:
        root = os.path.normpath(self.root)
        path = os.path.normpath(os.path.join(root, key))
        if not path.startswith(root + os.sep):
            raise ValueError(f"Blob key escapes storage root: {key}")
        return path

    def write(self, key: str, data: bytes, content_type: str = "image/png") -> str:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        logger.info(f"Stored blob {key} ({len(data)} bytes, {content_type})")
        return f"{self.url_prefix}{key}"

    def read(self, url: str) -> bytes:
        if url.startswith(self.url_prefix):
            with open(self._path(url[len(self.url_prefix):]), "rb") as f:
                return f.read()

        if url.startswith("http://") or url.startswith("https://"):
            with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                response = client.get(url)
                response.raise_for_status()
                return response.content

        raise ValueError(f"Unsupported blob url: {url}")


def build_blob_store(root: Optional[str] = None, url_prefix: Optional[str] = None) -> BlobStore:
    """Blob store configured from settings."""
    from genjobs.config import settings

    return LocalBlobStore(root or settings.BLOB_ROOT, url_prefix or settings.BLOB_URL_PREFIX)
