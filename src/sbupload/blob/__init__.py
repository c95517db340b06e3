"""Blob storage for uploaded artifacts."""

from .base import BlobStore, validate_key, validate_prefix
from .local import LocalBlobStore

__all__ = [
    "BlobStore",
    "LocalBlobStore",
    "validate_key",
    "validate_prefix",
]
