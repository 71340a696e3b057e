"""Durable object storage for rendered print files.

Two interchangeable backends implement :class:`ObjectStorage`:

* :class:`LocalObjectStorage` writes under a base directory and serves
  files from a configured public base URL (local dev and tests).
* :class:`S3ObjectStorage` uploads to any S3-compatible bucket (AWS S3,
  Cloudflare R2, MinIO) through ``boto3``.

Instances are built once in :mod:`storypress_api.dependencies` and passed
to the services that need them.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel
from storypress_core.errors import StorageError

logger = logging.getLogger(__name__)

# Keys are slash-separated segments of safe characters only.
_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9._-]+(/[A-Za-z0-9._-]+)*$")


class StoredObject(BaseModel):
    """Location of an uploaded object."""

    key: str
    url: str
    size_bytes: int


class ObjectStorage(Protocol):
    """Capability for writing public objects."""

    async def put(self, key: str, data: bytes, *, content_type: str) -> StoredObject: ...


def _validate_key(key: str) -> None:
    if not _SAFE_KEY_RE.match(key) or ".." in key.split("/"):
        raise StorageError(f"Invalid storage key: {key!r}")


def _join_url(base_url: str, key: str) -> str:
    return f"{base_url.rstrip('/')}/{key}"


class LocalObjectStorage:
    """Filesystem-backed storage.

    Parameters
    ----------
    base_path:
        Directory under which objects are written.
    public_base_url:
        URL prefix under which *base_path* is served.
    """

    def __init__(self, base_path: Path | str, public_base_url: str) -> None:
        self._base_path = Path(base_path)
        self._public_base_url = public_base_url

    async def put(self, key: str, data: bytes, *, content_type: str) -> StoredObject:
        _validate_key(key)
        target = (self._base_path / key).resolve()
        base = self._base_path.resolve()
        if base not in target.parents:
            raise StorageError(f"Storage key escapes base directory: {key!r}")
        await asyncio.to_thread(self._write, target, data)
        logger.info("Stored %s (%d bytes, %s)", target, len(data), content_type)
        return StoredObject(key=key, url=_join_url(self._public_base_url, key), size_bytes=len(data))

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)


class S3ObjectStorage:
    """S3-compatible storage via ``boto3``.

    ``boto3`` is synchronous, so uploads run in a worker thread and never
    block the event loop.

    Parameters
    ----------
    bucket:
        Target bucket name.
    public_base_url:
        Public URL prefix for objects in *bucket* (e.g. an R2 public
        domain or CloudFront distribution).
    client:
        Optional pre-built ``boto3`` S3 client; built from the remaining
        arguments when omitted.
    """

    def __init__(
        self,
        bucket: str,
        public_base_url: str,
        *,
        client: Any | None = None,
        endpoint_url: str | None = None,
        region: str = "auto",
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        self._bucket = bucket
        self._public_base_url = public_base_url
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            region_name=region,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            config=Config(signature_version="s3v4"),
        )

    async def put(self, key: str, data: bytes, *, content_type: str) -> StoredObject:
        _validate_key(key)
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Upload of {key} to bucket {self._bucket} failed: {exc}") from exc
        logger.info("Uploaded s3://%s/%s (%d bytes)", self._bucket, key, len(data))
        return StoredObject(key=key, url=_join_url(self._public_base_url, key), size_bytes=len(data))
