from __future__ import annotations

import re
from abc import ABC, abstractmethod

from ..core.errors import BlobStoreError
from ..core.types import PresignedUpload, UploadResult


KEY_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9._@+=-]+$")


def validate_key(key: str) -> str:
    """
    Object keys are relative, slash-separated paths with no empty, '.'
    or '..' segments.
    """
    if not key or key.startswith("/"):
        raise BlobStoreError(f"Invalid object key: {key!r}", key=key)

    for segment in key.split("/"):
        if segment in ("", ".", "..") or not KEY_SEGMENT_PATTERN.match(segment):
            raise BlobStoreError(f"Invalid object key: {key!r}", key=key)
    return key


def validate_prefix(prefix: str) -> str:
    """A prefix is a key followed by a single trailing slash."""
    if not prefix.endswith("/"):
        raise BlobStoreError(f"Prefix must end with '/': {prefix!r}", key=prefix)
    validate_key(prefix[:-1])
    return prefix


# ============================================================
# Blob Store
# ============================================================

class BlobStore(ABC):
    """
    Object storage for uploaded archives and coverage reports.

    upload() must have completed before its URL is recorded on a build.
    """

    @abstractmethod
    async def upload(self, key: str, body: bytes, content_type: str) -> UploadResult:
        raise NotImplementedError

    @abstractmethod
    async def get_presigned_upload_url(self, key: str, content_type: str) -> PresignedUpload:
        """
        Time-boxed URL for a direct client upload. The URL without its
        query string is where the object will be readable.
        """
        raise NotImplementedError

    @abstractmethod
    async def delete_by_prefix(self, prefix: str) -> int:
        """Delete every object under prefix. Returns the number deleted."""
        raise NotImplementedError

    @abstractmethod
    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        """Release clients. Default: nothing to release."""
