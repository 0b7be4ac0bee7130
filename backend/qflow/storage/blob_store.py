"""
Content-addressed blob storage for spilled wire values.

Blobs are keyed by the sha256 of their bytes, so identical payloads are stored
once. Each put() takes a reference and each release() drops one; blobs whose
count reaches zero are removed by collect_garbage().

Two backends:
- LocalBlobStore: files under a root directory, sharded by hash prefix.
- R2BlobStore (storage/r2.py): Cloudflare R2 via boto3.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class BlobRef(BaseModel):
    blob_id: str
    size: int
    checksum: str
    inner_encoding: str


class BlobNotFoundError(KeyError):
    pass


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class BlobStore:
    """Reference counting shared by all backends; subclasses move the bytes."""

    def __init__(self):
        self._refcounts: dict[str, int] = {}
        self._lock = threading.Lock()

    # Backend hooks
    def _write(self, blob_id: str, data: bytes) -> None:
        raise NotImplementedError

    def _read(self, blob_id: str) -> bytes:
        raise NotImplementedError

    def _delete(self, blob_id: str) -> None:
        raise NotImplementedError

    def _exists(self, blob_id: str) -> bool:
        raise NotImplementedError

    def put(self, data: bytes, inner_encoding: str) -> BlobRef:
        blob_id = content_hash(data)
        with self._lock:
            count = self._refcounts.get(blob_id, 0)
            if count == 0 and not self._exists(blob_id):
                self._write(blob_id, data)
                logger.debug("Stored blob %s (%d bytes)", blob_id, len(data))
            self._refcounts[blob_id] = count + 1
        return BlobRef(blob_id=blob_id, size=len(data), checksum=blob_id, inner_encoding=inner_encoding)

    def get(self, blob_id: str) -> bytes:
        return self._read(blob_id)

    def acquire(self, blob_id: str) -> None:
        with self._lock:
            self._refcounts[blob_id] = self._refcounts.get(blob_id, 0) + 1

    def release(self, blob_id: str) -> None:
        with self._lock:
            count = self._refcounts.get(blob_id, 0)
            self._refcounts[blob_id] = max(0, count - 1)

    def refcount(self, blob_id: str) -> int:
        return self._refcounts.get(blob_id, 0)

    def collect_garbage(self) -> list[str]:
        with self._lock:
            dead = [blob_id for blob_id, count in self._refcounts.items() if count == 0]
            for blob_id in dead:
                try:
                    self._delete(blob_id)
                except BlobNotFoundError:
                    pass
                del self._refcounts[blob_id]
        if dead:
            logger.info("Collected %d unreferenced blobs", len(dead))
        return dead


class LocalBlobStore(BlobStore):
    def __init__(self, root: Path):
        super().__init__()
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, blob_id: str) -> Path:
        return self.root / blob_id[:2] / blob_id

    def _write(self, blob_id: str, data: bytes) -> None:
        path = self._path(blob_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)

    def _read(self, blob_id: str) -> bytes:
        path = self._path(blob_id)
        if not path.exists():
            raise BlobNotFoundError(blob_id)
        return path.read_bytes()

    def _delete(self, blob_id: str) -> None:
        path = self._path(blob_id)
        if not path.exists():
            raise BlobNotFoundError(blob_id)
        path.unlink()

    def _exists(self, blob_id: str) -> bool:
        return self._path(blob_id).exists()
