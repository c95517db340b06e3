"""Project-scoped API keys (hashed at rest)."""

from .base import (
    ApiKey,
    ApiKeyStatus,
    ApiKeyStore,
    ApiKeyValidation,
    CreatedApiKey,
)
from .utils import (
    KEY_PREFIX,
    extract_project_id,
    generate_api_key,
    hash_api_key,
    is_valid_api_key_format,
)
from .sqlite import SQLiteApiKeyStore
from .firestore import FirestoreApiKeyStore

__all__ = [
    "ApiKey",
    "ApiKeyStatus",
    "ApiKeyStore",
    "ApiKeyValidation",
    "CreatedApiKey",
    "KEY_PREFIX",
    "extract_project_id",
    "generate_api_key",
    "hash_api_key",
    "is_valid_api_key_format",
    "SQLiteApiKeyStore",
    "FirestoreApiKeyStore",
]
