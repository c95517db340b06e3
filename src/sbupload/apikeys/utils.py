"""
API key generation and hashing.

Key format: sbu_proj_{projectId}_{random}
    - random is 43 base62 characters (about 256 bits)
    - project ids may contain '_' and '-'; random never contains '_',
      so the project id is everything between the prefix and the last '_'

Raw keys are shown once at creation. Only the SHA-256 hex digest and a
12-character display prefix are stored.
"""

from __future__ import annotations

import hashlib
import secrets
import string
from typing import Optional


KEY_PREFIX = "sbu_proj_"
BASE62_ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase
RANDOM_LENGTH = 43
MIN_RANDOM_LENGTH = 16
DISPLAY_PREFIX_LENGTH = 12


def generate_random_string(length: int = RANDOM_LENGTH) -> str:
    return "".join(secrets.choice(BASE62_ALPHABET) for _ in range(length))


def generate_api_key(project_id: str) -> str:
    return f"{KEY_PREFIX}{project_id}_{generate_random_string()}"


def _split(api_key: str):
    if not isinstance(api_key, str) or not api_key.startswith(KEY_PREFIX):
        return None
    project_id, sep, random_part = api_key[len(KEY_PREFIX):].rpartition("_")
    if not sep or not project_id:
        return None
    return project_id, random_part


def extract_project_id(api_key: str) -> Optional[str]:
    parts = _split(api_key)
    return parts[0] if parts else None


def is_valid_api_key_format(api_key: str) -> bool:
    parts = _split(api_key)
    if parts is None:
        return False
    _, random_part = parts
    return len(random_part) >= MIN_RANDOM_LENGTH and all(c in BASE62_ALPHABET for c in random_part)


def get_key_prefix(api_key: str) -> str:
    return api_key[:DISPLAY_PREFIX_LENGTH]


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


__all__ = [
    "KEY_PREFIX",
    "generate_api_key",
    "extract_project_id",
    "is_valid_api_key_format",
    "get_key_prefix",
    "hash_api_key",
]
