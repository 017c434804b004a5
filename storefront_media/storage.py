"""
Storage abstraction for Cloudflare R2 (S3-compatible) and in-memory testing.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from storefront_media.config import MAX_DELETE_BATCH_SIZE

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def guess_content_type(path: str) -> str:
    return CONTENT_TYPES.get(os.path.splitext(path)[1].lower(), "application/octet-stream")


@dataclass(frozen=True)
class StoredObject:
    key: str
    last_modified: Optional[datetime] = None
    size: int = 0


class StorageClient(Protocol):
    """Defines the operations the media service needs from object storage."""

    def list_objects(self, prefix: str) -> Iterator[list[StoredObject]]:
        """Yield pages of objects under ``prefix`` until the listing is exhausted."""
        ...

    def delete_objects(self, keys: list[str]) -> list[str]:
        """Delete up to 1000 keys in one call; return keys the provider failed to delete."""
        ...

    def upload_file(self, src_path: str, key: str, content_type: str | None = None) -> None:
        ...

    def delete_object(self, key: str) -> None:
        ...

    def object_exists(self, key: str) -> bool:
        ...


@dataclass
class _Blob:
    body: bytes
    last_modified: datetime


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    page_size: int = 1000
    objects: dict[str, _Blob] = field(default_factory=dict)
    list_calls: list[str] = field(default_factory=list)
    delete_calls: list[list[str]] = field(default_factory=list)
    head_calls: list[str] = field(default_factory=list)
    # Failure injection for tests
    list_error: Optional[Exception] = None
    list_error_after_pages: int = 0
    failing_delete_calls: set[int] = field(default_factory=set)
    undeletable_keys: set[str] = field(default_factory=set)

    def put_object(
        self, key: str, body: bytes = b"", last_modified: Optional[datetime] = None
    ) -> None:
        self.objects[key] = _Blob(
            body=body, last_modified=last_modified or datetime.now(timezone.utc)
        )

    def keys(self) -> set[str]:
        return set(self.objects)

    def reset(self) -> None:
        """Clear all stored data and recorded calls (useful in tests)."""
        self.objects.clear()
        self.list_calls.clear()
        self.delete_calls.clear()
        self.head_calls.clear()

    def list_objects(self, prefix: str) -> Iterator[list[StoredObject]]:
        self.list_calls.append(prefix)
        matching = sorted(key for key in self.objects if key.startswith(prefix))
        for page_number, start in enumerate(range(0, len(matching), self.page_size)):
            if self.list_error is not None and page_number >= self.list_error_after_pages:
                raise self.list_error
            page_keys = matching[start : start + self.page_size]
            yield [
                StoredObject(
                    key=key,
                    last_modified=self.objects[key].last_modified,
                    size=len(self.objects[key].body),
                )
                for key in page_keys
            ]

    def delete_objects(self, keys: list[str]) -> list[str]:
        if len(keys) > MAX_DELETE_BATCH_SIZE:
            raise ValueError(f"Cannot delete {len(keys)} keys in one call")
        call_index = len(self.delete_calls)
        self.delete_calls.append(list(keys))
        if call_index in self.failing_delete_calls:
            raise ConnectionError("simulated delete failure")
        failed = [key for key in keys if key in self.undeletable_keys]
        for key in keys:
            if key not in self.undeletable_keys:
                self.objects.pop(key, None)
        return failed

    def upload_file(self, src_path: str, key: str, content_type: str | None = None) -> None:
        with open(src_path, "rb") as f:
            self.put_object(key, f.read())

    def delete_object(self, key: str) -> None:
        self.objects.pop(key, None)

    def object_exists(self, key: str) -> bool:
        self.head_calls.append(key)
        return key in self.objects


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client for Cloudflare R2.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
            retries={"max_attempts": 3, "mode": "standard"},
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def list_objects(self, prefix: str) -> Iterator[list[StoredObject]]:
        # The paginator follows NextContinuationToken until IsTruncated is false.
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            yield [
                StoredObject(
                    key=item["Key"],
                    last_modified=item.get("LastModified"),
                    size=item.get("Size", 0),
                )
                for item in page.get("Contents", [])
            ]

    def delete_objects(self, keys: list[str]) -> list[str]:
        if not keys:
            return []
        if len(keys) > MAX_DELETE_BATCH_SIZE:
            raise ValueError(f"Cannot delete {len(keys)} keys in one call")
        # Quiet mode only reports the keys that failed.
        response = self._client.delete_objects(
            Bucket=self.bucket,
            Delete={"Objects": [{"Key": key} for key in keys], "Quiet": True},
        )
        return [error["Key"] for error in response.get("Errors", []) if "Key" in error]

    def upload_file(self, src_path: str, key: str, content_type: str | None = None) -> None:
        self._client.upload_file(
            src_path,
            self.bucket,
            key,
            ExtraArgs={"ContentType": content_type or guess_content_type(src_path)},
        )

    def delete_object(self, key: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=key)

    def object_exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True
