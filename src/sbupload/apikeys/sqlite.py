from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from .base import ApiKey, ApiKeyStatus, ApiKeyStore, CreatedApiKey
from .utils import generate_api_key, get_key_prefix, hash_api_key
from ..core.types import format_timestamp, generate_document_id, parse_timestamp, utc_now
from ..metadata.sqlite import SQLiteDatabase

logger = logging.getLogger(__name__)


def _ts(value: Optional[str]) -> Optional[datetime]:
    return parse_timestamp(value) if value else None


class SQLiteApiKeyStore(SQLiteDatabase, ApiKeyStore):
    """API keys in the same SQLite file as build metadata (api_keys table)."""

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

        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO api_keys (
                project_id, key_id, name, prefix, hash, status,
                created_at, created_by, expires_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project_id,
                api_key.id,
                name,
                api_key.prefix,
                hash_api_key(raw_key),
                api_key.status.value,
                format_timestamp(api_key.created_at),
                created_by,
                format_timestamp(expires_at) if expires_at else None,
            ),
            "create_api_key",
        )

        logger.info(f"Created API key {api_key.id} ({api_key.prefix}...) for project {project_id}")
        return CreatedApiKey(api_key=api_key, raw_key=raw_key)

    async def find_active_key(self, project_id: str, key_hash: str) -> Optional[ApiKey]:
        rows = await asyncio.to_thread(
            self._fetch,
            """
            SELECT * FROM api_keys
            WHERE project_id = ? AND hash = ? AND status = 'active'
            LIMIT 1
            """,
            (project_id, key_hash),
            "find_active_key",
        )
        return self._row_to_key(rows[0]) if rows else None

    async def list_api_keys(self, project_id: str) -> List[ApiKey]:
        rows = await asyncio.to_thread(
            self._fetch,
            "SELECT * FROM api_keys WHERE project_id = ? ORDER BY created_at DESC",
            (project_id,),
            "list_api_keys",
        )
        return [self._row_to_key(r) for r in rows]

    async def revoke_api_key(self, project_id: str, key_id: str, user_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE api_keys SET status = 'revoked', revoked_at = ?, revoked_by = ?
            WHERE project_id = ? AND key_id = ?
            """,
            (format_timestamp(utc_now()), user_id, project_id, key_id),
            "revoke_api_key",
        )

    async def delete_api_key(self, project_id: str, key_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM api_keys WHERE project_id = ? AND key_id = ?",
            (project_id, key_id),
            "delete_api_key",
        )

    async def update_last_used(self, project_id: str, key_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE api_keys SET last_used_at = ? WHERE project_id = ? AND key_id = ?",
            (format_timestamp(utc_now()), project_id, key_id),
            "update_last_used",
        )

    @staticmethod
    def _row_to_key(row: sqlite3.Row) -> ApiKey:
        return ApiKey(
            id=row["key_id"],
            project_id=row["project_id"],
            name=row["name"],
            prefix=row["prefix"],
            status=ApiKeyStatus(row["status"]),
            created_at=parse_timestamp(row["created_at"]),
            created_by=row["created_by"],
            last_used_at=_ts(row["last_used_at"]),
            expires_at=_ts(row["expires_at"]),
            revoked_at=_ts(row["revoked_at"]),
            revoked_by=row["revoked_by"],
        )
