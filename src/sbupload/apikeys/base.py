from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .utils import hash_api_key, is_valid_api_key_format
from ..core.types import format_timestamp, utc_now


INVALID_FORMAT = "Invalid API key format"
INVALID_OR_REVOKED = "Invalid or revoked API key"
EXPIRED = "API key has expired"


def api_key_path(project_id: str, key_id: str) -> str:
    return f"projects/{project_id}/apiKeys/{key_id}"


class ApiKeyStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


@dataclass(frozen=True)
class ApiKey:
    """Stored key metadata. The hash is never exposed."""
    id: str
    project_id: str
    name: str
    prefix: str
    status: ApiKeyStatus
    created_at: datetime
    created_by: str
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def to_public_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "prefix": self.prefix,
            "status": self.status.value,
            "createdAt": format_timestamp(self.created_at),
            "createdBy": self.created_by,
        }
        for key, value in (
            ("lastUsedAt", self.last_used_at),
            ("expiresAt", self.expires_at),
            ("revokedAt", self.revoked_at),
        ):
            if value is not None:
                data[key] = format_timestamp(value)
        if self.revoked_by is not None:
            data["revokedBy"] = self.revoked_by
        return data


@dataclass(frozen=True)
class CreatedApiKey:
    """Result of create_api_key. raw_key is available only here."""
    api_key: ApiKey
    raw_key: str


@dataclass(frozen=True)
class ApiKeyValidation:
    valid: bool
    api_key: Optional[ApiKey] = None
    error: Optional[str] = None


# ============================================================
# API Key Store
# ============================================================

class ApiKeyStore(ABC):
    """
    Per-project API keys.

    validate_api_key is shared: implementations only look up an active
    key by hash.
    """

    clock: Callable[[], datetime] = staticmethod(utc_now)

    @abstractmethod
    async def create_api_key(
        self,
        project_id: str,
        name: str,
        created_by: str,
        expires_at: Optional[datetime] = None,
    ) -> CreatedApiKey:
        raise NotImplementedError

    @abstractmethod
    async def find_active_key(self, project_id: str, key_hash: str) -> Optional[ApiKey]:
        raise NotImplementedError

    @abstractmethod
    async def list_api_keys(self, project_id: str) -> List[ApiKey]:
        """Newest first."""
        raise NotImplementedError

    @abstractmethod
    async def revoke_api_key(self, project_id: str, key_id: str, user_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete_api_key(self, project_id: str, key_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def update_last_used(self, project_id: str, key_id: str) -> None:
        raise NotImplementedError

    async def validate_api_key(self, project_id: str, raw_key: str) -> ApiKeyValidation:
        if not is_valid_api_key_format(raw_key):
            return ApiKeyValidation(valid=False, error=INVALID_FORMAT)

        api_key = await self.find_active_key(project_id, hash_api_key(raw_key))
        if api_key is None:
            return ApiKeyValidation(valid=False, error=INVALID_OR_REVOKED)

        if api_key.is_expired(self.clock()):
            return ApiKeyValidation(valid=False, error=EXPIRED)

        return ApiKeyValidation(valid=True, api_key=api_key)

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
