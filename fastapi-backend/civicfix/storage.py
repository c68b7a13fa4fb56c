"""
Blob storage for report photos.

Photos are written either to S3 (or a compatible service such as MinIO) or
to a local directory served under `/storage`. Stored references are stable:
`s3://<bucket>/<key>` for S3 and `/storage/<key>` for local files. S3
references are turned into presigned GET URLs when a report is rendered.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional
import logging
import mimetypes
import uuid

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings, get_settings
from .errors import TransientStorageError

logger = logging.getLogger("civicfix.storage")


def guess_extension(content_type: str) -> str:
    mapped = mimetypes.guess_extension(content_type or "") or ".jpg"
    mapped = mapped.lstrip(".")
    return "jpg" if mapped in {"jpe", "jpeg"} else mapped


def build_photo_key(upload_id: str, content_type: str = "image/jpeg") -> str:
    return f"reports/photos/{upload_id}.{guess_extension(content_type)}"


class BlobStorage:
    """Stores photo bytes and hands back reference URLs."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.provider = settings.storage_provider
        self._bucket = settings.s3_bucket
        self._download_expiry = settings.s3_presign_expiry_get
        self._client = None
        self._local_root = Path(settings.local_storage_dir)

        if self.provider == "s3":
            session_kwargs = {}
            if settings.s3_access_key_id and settings.s3_secret_access_key:
                session_kwargs.update(
                    aws_access_key_id=settings.s3_access_key_id,
                    aws_secret_access_key=settings.s3_secret_access_key,
                )
            client_kwargs = {
                "service_name": "s3",
                "region_name": settings.s3_region,
                "config": Config(signature_version="s3v4"),
            }
            if settings.s3_endpoint:
                client_kwargs["endpoint_url"] = settings.s3_endpoint
            self._client = boto3.session.Session(**session_kwargs).client(**client_kwargs)
            self._region = settings.s3_region
        else:
            self._local_root.mkdir(parents=True, exist_ok=True)

        logger.info("Blob storage initialized (provider=%s)", self.provider)

    @property
    def local_root(self) -> Path:
        return self._local_root

    def ensure_bucket(self) -> None:
        """Best-effort check that the bucket exists (creates it for local MinIO/dev)."""
        if self._client is None:
            return
        try:
            self._client.head_bucket(Bucket=self._bucket)
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code")
            if error_code not in {"404", "NoSuchBucket"}:
                raise
            logger.info("Bucket %s missing; creating it", self._bucket)
            params = {"Bucket": self._bucket}
            if self._region and self._region != "us-east-1":
                params["CreateBucketConfiguration"] = {"LocationConstraint": self._region}
            self._client.create_bucket(**params)

    def upload_photo(self, data: bytes, content_type: str = "image/jpeg") -> str:
        """Store one photo and return its reference URL."""
        key = build_photo_key(str(uuid.uuid4()), content_type)

        if self._client is not None:
            try:
                self._client.put_object(
                    Bucket=self._bucket, Key=key, Body=data, ContentType=content_type
                )
            except (ClientError, BotoCoreError) as exc:
                raise TransientStorageError(f"Photo upload failed: {exc}") from exc
            return f"s3://{self._bucket}/{key}"

        path = self._local_root / key
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise TransientStorageError(f"Photo upload failed: {exc}") from exc
        logger.info("Stored photo locally: %s", path)
        return f"/storage/{key}"

    def resolve_url(self, reference: str) -> str:
        """Turn a stored reference into a URL a browser can fetch."""
        prefix = f"s3://{self._bucket}/"
        if self._client is None or not reference.startswith(prefix):
            return reference
        key = reference[len(prefix):]
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=self._download_expiry,
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error("Failed to presign %s: %s", key, exc)
            return reference


@lru_cache()
def get_blob_storage() -> BlobStorage:
    storage = BlobStorage()
    storage.ensure_bucket()
    return storage


__all__ = ["BlobStorage", "build_photo_key", "get_blob_storage", "guess_extension"]
