from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from intake_ledger.core.config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ObjectStoreError(Exception):
    """Base object store error."""


class ObjectStoreUnavailableError(ObjectStoreError):
    """Raised when the bucket is not configured or the upload fails."""


class ObjectStoreValidationError(ObjectStoreError):
    """Raised when the upload body is rejected before it is sent."""


@dataclass(slots=True)
class UploadResult:
    key: str
    url: str
    content_type: str
    size: int


def generate_object_key(content_type: str | None, *, prefix: str = "uploads", now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    extension = ""
    if content_type:
        extension = mimetypes.guess_extension(content_type.split(";", 1)[0].strip()) or ""
    stamp = now.strftime("%Y%m%dT%H%M%S")
    name = f"{stamp}-{uuid.uuid4().hex}{extension}"
    return f"{prefix.strip('/')}/{name}" if prefix.strip("/") else name


class S3ObjectStore:
    def __init__(
        self,
        bucket: str | None,
        *,
        public_base_url: str | None = None,
        key_prefix: str = "uploads",
        max_bytes: int = 10 * 1024 * 1024,
        client: Any | None = None,
        client_kwargs: dict[str, Any] | None = None,
    ) -> None:
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.key_prefix = key_prefix
        self.max_bytes = max_bytes
        self._client = client
        self._client_kwargs = client_kwargs or {}

    async def upload(self, body: bytes, content_type: str | None) -> UploadResult:
        if not self.bucket:
            raise ObjectStoreUnavailableError("IL_OBJECT_STORE_BUCKET is required")
        if not body:
            raise ObjectStoreValidationError("upload body is empty")
        if len(body) > self.max_bytes:
            raise ObjectStoreValidationError(f"upload exceeds {self.max_bytes} bytes")

        resolved_type = content_type or DEFAULT_CONTENT_TYPE
        key = generate_object_key(resolved_type, prefix=self.key_prefix)
        try:
            await asyncio.to_thread(
                self._get_client().put_object,
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=resolved_type,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning("object upload failed bucket=%s key=%s: %s", self.bucket, key, exc)
            raise ObjectStoreUnavailableError("object upload failed") from exc

        logger.info("object uploaded bucket=%s key=%s size=%s", self.bucket, key, len(body))
        return UploadResult(key=key, url=self.public_url(key), content_type=resolved_type, size=len(body))

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client(
                "s3",
                config=Config(retries={"max_attempts": 5, "mode": "standard"}),
                **self._client_kwargs,
            )
        return self._client


@lru_cache
def get_object_store() -> S3ObjectStore:
    settings = get_settings()
    client_kwargs: dict[str, Any] = {}
    if settings.object_store_endpoint_url:
        client_kwargs["endpoint_url"] = settings.object_store_endpoint_url
    if settings.object_store_region:
        client_kwargs["region_name"] = settings.object_store_region
    if settings.object_store_access_key_id and settings.object_store_secret_access_key:
        client_kwargs["aws_access_key_id"] = settings.object_store_access_key_id
        client_kwargs["aws_secret_access_key"] = settings.object_store_secret_access_key
    return S3ObjectStore(
        settings.object_store_bucket,
        public_base_url=settings.object_store_public_base_url,
        key_prefix=settings.object_store_key_prefix,
        max_bytes=settings.upload_max_bytes,
        client_kwargs=client_kwargs,
    )
