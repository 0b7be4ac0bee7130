"""
Cloudflare R2 (S3-compatible) backend for spilled blobs.

Credentials come from R2_ENDPOINT / R2_ACCESS_KEY_ID / R2_SECRET_ACCESS_KEY;
the bucket from QFLOW_R2_BUCKET (or R2_BUCKET). Objects live under a key
prefix so one bucket can hold several engines' blobs.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import boto3
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from qflow.storage.blob_store import BlobNotFoundError, BlobStore

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "qflow-blobs"
_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


def r2_bucket() -> str:
    return os.getenv("QFLOW_R2_BUCKET") or os.getenv("R2_BUCKET") or DEFAULT_BUCKET


class R2Client:
    """Process-wide S3 client for R2, created on first use."""

    _instance: Optional['R2Client'] = None
    _client: Optional[BaseClient] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._client is not None:
            return

        settings = {
            "endpoint_url": os.getenv("R2_ENDPOINT"),
            "aws_access_key_id": os.getenv("R2_ACCESS_KEY_ID"),
            "aws_secret_access_key": os.getenv("R2_SECRET_ACCESS_KEY"),
        }
        missing = [
            env for env, key in (
                ("R2_ENDPOINT", "endpoint_url"),
                ("R2_ACCESS_KEY_ID", "aws_access_key_id"),
                ("R2_SECRET_ACCESS_KEY", "aws_secret_access_key"),
            )
            if not settings[key]
        ]
        if missing:
            raise ValueError(f"R2 blob backend needs environment variables: {', '.join(missing)}")

        try:
            self._client = boto3.client(
                "s3",
                region_name="auto",
                config=Config(retries={"max_attempts": 5, "mode": "standard"}),
                **settings,
            )
        except BotoCoreError as e:
            raise ValueError(f"Failed to create R2 client: {e}") from e
        logger.info("R2 client created for %s", settings["endpoint_url"])

    @property
    def client(self) -> BaseClient:
        if self._client is None:
            raise RuntimeError("R2 client not initialized. Check environment variables.")
        return self._client


def get_r2() -> R2Client:
    return R2Client()


def _missing(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in _MISSING_CODES


class R2BlobStore(BlobStore):
    def __init__(self, client: BaseClient, bucket: str | None = None, prefix: str = "blobs/"):
        super().__init__()
        self.client = client
        self.bucket = bucket or r2_bucket()
        self.prefix = prefix

    def _key(self, blob_id: str) -> str:
        return f"{self.prefix}{blob_id}"

    def _write(self, blob_id: str, data: bytes) -> None:
        self.client.put_object(Bucket=self.bucket, Key=self._key(blob_id), Body=data)

    def _read(self, blob_id: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._key(blob_id))
        except ClientError as e:
            if _missing(e):
                raise BlobNotFoundError(blob_id) from e
            raise
        return response["Body"].read()

    def _delete(self, blob_id: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=self._key(blob_id))

    def _exists(self, blob_id: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._key(blob_id))
        except ClientError as e:
            if _missing(e):
                return False
            raise
        return True
