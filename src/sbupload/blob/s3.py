"""
S3-compatible blob store (AWS S3, Cloudflare R2).

boto3 is synchronous; every client call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .base import BlobStore, validate_key, validate_prefix
from ..core.errors import BlobStoreError
from ..core.types import PresignedUpload, UploadResult

logger = logging.getLogger(__name__)


PRESIGNED_URL_EXPIRY_SECONDS = 3600
DELETE_BATCH_SIZE = 1000  # delete_objects limit


def r2_endpoint(account_id: str) -> str:
    return f"https://{account_id}.r2.cloudflarestorage.com"


def r2_public_base_url(account_id: str, bucket: str) -> str:
    return f"https://pub-{bucket}.{account_id}.r2.dev"


class S3BlobStore(BlobStore):

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        region_name: str = "auto",
        public_base_url: Optional[str] = None,
        client: Any = None,
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

        if client is None:
            session = boto3.session.Session()
            client = session.client(
                "s3",
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                region_name=region_name,
            )
        self._client = client

    @classmethod
    def for_r2(
        cls,
        account_id: str,
        bucket: str,
        access_key_id: str,
        secret_access_key: str,
        public_base_url: Optional[str] = None,
    ) -> S3BlobStore:
        return cls(
            bucket,
            endpoint_url=r2_endpoint(account_id),
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            region_name="auto",
            public_base_url=public_base_url or r2_public_base_url(account_id, bucket),
        )

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    # --------------------------------------------------------
    # Upload
    # --------------------------------------------------------

    async def upload(self, key: str, body: bytes, content_type: str) -> UploadResult:
        validate_key(key)
        try:
            response = await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(f"Upload of {key} failed: {exc}", key=key) from exc

        logger.debug(f"Uploaded {len(body)} bytes to s3://{self.bucket}/{key}")
        return UploadResult(
            url=self.url_for(key),
            path=key,
            version_id=(response or {}).get("VersionId"),
        )

    async def get_presigned_upload_url(self, key: str, content_type: str) -> PresignedUpload:
        validate_key(key)
        try:
            url = await asyncio.to_thread(
                self._client.generate_presigned_url,
                "put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=PRESIGNED_URL_EXPIRY_SECONDS,
            )
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(f"Presigning {key} failed: {exc}", key=key) from exc
        return PresignedUpload(url=url, key=key)

    # --------------------------------------------------------
    # Query / Delete
    # --------------------------------------------------------

    async def exists(self, key: str) -> bool:
        validate_key(key)
        try:
            await asyncio.to_thread(self._client.head_object, Bucket=self.bucket, Key=key)
            return True
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise BlobStoreError(f"Lookup of {key} failed: {exc}", key=key) from exc
        except BotoCoreError as exc:
            raise BlobStoreError(f"Lookup of {key} failed: {exc}", key=key) from exc

    async def delete_by_prefix(self, prefix: str) -> int:
        validate_prefix(prefix)
        try:
            return await asyncio.to_thread(self._delete_by_prefix, prefix)
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(f"Delete under {prefix} failed: {exc}", key=prefix) from exc

    def _delete_by_prefix(self, prefix: str) -> int:
        keys: List[str] = []
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))

        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            self._client.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
            )

        logger.info(f"Deleted {len(keys)} objects under s3://{self.bucket}/{prefix}")
        return len(keys)
