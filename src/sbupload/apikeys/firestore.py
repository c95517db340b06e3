from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

from .base import ApiKey, ApiKeyStatus, ApiKeyStore, CreatedApiKey, api_key_path
from .utils import generate_api_key, get_key_prefix, hash_api_key
from ..core.tagged import UNSET
from ..core.types import generate_document_id, parse_timestamp, utc_now
from ..metadata.rest import (
    Document,
    FirestoreRestClient,
    and_filter,
    field_filter,
    structured_query,
)

logger = logging.getLogger(__name__)


API_KEYS_COLLECTION = "apiKeys"


def _ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return parse_timestamp(str(value))


class FirestoreApiKeyStore(ApiKeyStore):
    """API keys at projects/{projectId}/apiKeys/{keyId}."""

    def __init__(self, client: FirestoreRestClient):
        self.client = client

    async def close(self) -> None:
        await self.client.close()

    async def create_api_key(
        self,
        project_id: str,
        name: str,
        created_by: str,
        expires_at: Optional[datetime] = None,
    ) -> CreatedApiKey:
        raw_key = generate_api_key(project_id)
        api_key = ApiKey(
            id=generate_document_id(),
            project_id=project_id,
            name=name,
            prefix=get_key_prefix(raw_key),
            status=ApiKeyStatus.ACTIVE,
            created_at=utc_now(),
            created_by=created_by,
            expires_at=expires_at,
        )

        await self.client.set_document(
            api_key_path(project_id, api_key.id),
            {
                "name": name,
                "prefix": api_key.prefix,
                "hash": hash_api_key(raw_key),
                "status": api_key.status.value,
                "createdAt": api_key.created_at,
                "createdBy": created_by,
                "expiresAt": expires_at if expires_at else UNSET,
            },
        )

        logger.info(f"Created API key {api_key.id} ({api_key.prefix}...) for project {project_id}")
        return CreatedApiKey(api_key=api_key, raw_key=raw_key)

    async def find_active_key(self, project_id: str, key_hash: str) -> Optional[ApiKey]:
        docs = await self.client.run_query(
            f"projects/{project_id}",
            structured_query(
                API_KEYS_COLLECTION,
                where=and_filter(
                    field_filter("hash", "EQUAL", key_hash),
                    field_filter("status", "EQUAL", ApiKeyStatus.ACTIVE.value),
                ),
                limit=1,
            ),
        )
        return self._doc_to_key(docs[0], project_id) if docs else None

    async def list_api_keys(self, project_id: str) -> List[ApiKey]:
        docs = await self.client.run_query(
            f"projects/{project_id}",
            structured_query(API_KEYS_COLLECTION, order_by="createdAt"),
        )
        return [self._doc_to_key(d, project_id) for d in docs]

    async def revoke_api_key(self, project_id: str, key_id: str, user_id: str) -> None:
        await self.client.patch_document(
            api_key_path(project_id, key_id),
            {
                "status": ApiKeyStatus.REVOKED.value,
                "revokedAt": utc_now(),
                "revokedBy": user_id,
            },
        )

    async def delete_api_key(self, project_id: str, key_id: str) -> None:
        await self.client.delete_document(api_key_path(project_id, key_id))

    async def update_last_used(self, project_id: str, key_id: str) -> None:
        await self.client.patch_document(
            api_key_path(project_id, key_id),
            {"lastUsedAt": utc_now()},
        )

    @staticmethod
    def _doc_to_key(doc: Document, project_id: str) -> ApiKey:
        f = doc.fields
        return ApiKey(
            id=doc.id,
            project_id=project_id,
            name=f.get("name", ""),
            prefix=f.get("prefix", ""),
            status=ApiKeyStatus(f.get("status", ApiKeyStatus.ACTIVE.value)),
            created_at=_ts(f.get("createdAt")) or utc_now(),
            created_by=f.get("createdBy", ""),
            last_used_at=_ts(f.get("lastUsedAt")),
            expires_at=_ts(f.get("expiresAt")),
            revoked_at=_ts(f.get("revokedAt")),
            revoked_by=f.get("revokedBy"),
        )
