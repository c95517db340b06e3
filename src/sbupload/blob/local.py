from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Union

from .base import BlobStore, validate_key, validate_prefix
from ..core.errors import BlobStoreError
from ..core.types import PresignedUpload, UploadResult

logger = logging.getLogger(__name__)


class LocalBlobStore(BlobStore):
    """
    Blob store on the local filesystem.

    Layout: {root}/{key}. Writes are atomic (temp file + fsync + os.replace)
    so a reader never sees a half-written archive.
    """

    def __init__(self, root: Union[str, Path], public_base_url: Optional[str] = None):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def _path(self, key: str) -> Path:
        path = (self.root / validate_key(key)).resolve()
        if self.root not in path.parents:
            raise BlobStoreError(f"Key escapes storage root: {key!r}", key=key)
        return path

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return self._path(key).as_uri()

    # --------------------------------------------------------
    # Upload
    # --------------------------------------------------------

    async def upload(self, key: str, body: bytes, content_type: str) -> UploadResult:
        dest = self._path(key)
        await asyncio.to_thread(self._write_atomic, dest, body)
        logger.debug(f"Stored {len(body)} bytes at {key} ({content_type})")
        return UploadResult(url=self.url_for(key), path=key)

    @staticmethod
    def _write_atomic(dest: Path, body: bytes) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)

        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(dir=dest.parent, delete=False, suffix=".tmp") as tmp_file:
                tmp_path = Path(tmp_file.name)
                tmp_file.write(body)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())

            os.replace(tmp_path, dest)
        except OSError as e:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise BlobStoreError(f"Failed to write {dest.name}: {e}", key=str(dest)) from e

    async def get_presigned_upload_url(self, key: str, content_type: str) -> PresignedUpload:
        raise BlobStoreError("Presigned uploads are not supported by the local blob store", key=key)

    # --------------------------------------------------------
    # Query / Delete
    # --------------------------------------------------------

    async def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    async def delete_by_prefix(self, prefix: str) -> int:
        validate_prefix(prefix)
        directory = self._path(prefix[:-1])
        return await asyncio.to_thread(self._delete_tree, directory)

    @staticmethod
    def _delete_tree(directory: Path) -> int:
        if not directory.is_dir():
            return 0

        count = sum(1 for p in directory.rglob("*") if p.is_file())
        try:
            shutil.rmtree(directory)
        except OSError as e:
            raise BlobStoreError(f"Failed to delete {directory}: {e}") from e

        logger.info(f"Deleted {count} objects under {directory}")
        return count
