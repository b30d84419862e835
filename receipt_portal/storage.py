"""
Blob storage abstraction for receipt images: S3-compatible storage and
an in-memory test double. The Supabase-backed store lives in
``receipt_portal.supabase_backend``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from receipt_portal.errors import StorageError

logger = logging.getLogger(__name__)


@dataclass
class ReceiptFile:
    """A receipt image as handed over by the caller."""

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class BlobStore(Protocol):
    """Defines the operations the gateway needs from object storage."""

    async def upload(self, path: str, receipt: ReceiptFile) -> str:
        ...

    async def public_url(self, path: str) -> str:
        ...

    async def remove(self, path: str) -> None:
        ...


@dataclass
class InMemoryBlobStore:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage/v1/object/public/receipts"
    stored_objects: dict = field(default_factory=dict)
    fail_uploads: bool = False

    async def upload(self, path: str, receipt: ReceiptFile) -> str:
        if self.fail_uploads:
            raise StorageError("Upload rejected", code="500")
        if path in self.stored_objects:
            # Uploads never overwrite, same as the hosted bucket without upsert
            raise StorageError("The resource already exists", code="409")
        self.stored_objects[path] = receipt.content
        return path

    async def public_url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    async def remove(self, path: str) -> None:
        self.stored_objects.pop(path, None)


@dataclass
class S3BlobStore:
    """
    S3-compatible blob store (Supabase storage's S3 endpoint, COS, MinIO).
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: str = ""

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    async def upload(self, path: str, receipt: ReceiptFile) -> str:
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=path,
                Body=receipt.content,
                ContentType=receipt.content_type,
            )
        except ClientError as exc:
            error = exc.response.get("Error", {})
            raise StorageError(
                error.get("Message") or str(exc), code=error.get("Code")
            ) from exc
        except BotoCoreError as exc:
            raise StorageError(str(exc)) from exc
        return path

    async def public_url(self, path: str) -> str:
        base = (self.public_base_url or self.endpoint).rstrip("/")
        return f"{base}/{self.bucket}/{path}"

    async def remove(self, path: str) -> None:
        try:
            await asyncio.to_thread(
                self._client.delete_object, Bucket=self.bucket, Key=path
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(str(exc)) from exc
