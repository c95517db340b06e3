"""
Minimal async client for the Firestore document REST API (v1).

Only single-document calls plus runQuery are exposed: the REST surface
offers no cross-document transaction, and callers must not assume one.

Every value goes through the tagged codec (core.tagged) on the way out
and on the way back.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp

from .credentials import AccessTokenCache, ServiceAccountCredentials
from ..core.errors import MetadataStoreError
from ..core.tagged import decode_fields, encode_fields, to_tagged_value

logger = logging.getLogger(__name__)


FIRESTORE_BASE_URL = "https://firestore.googleapis.com/v1"
DEFAULT_TIMEOUT_SECONDS = 30.0

# Backend status names that mean "your precondition did not hold"
PRECONDITION_REASONS = frozenset({"FAILED_PRECONDITION", "ALREADY_EXISTS", "ABORTED"})


@dataclass(frozen=True)
class Precondition:
    """currentDocument precondition for a write."""
    exists: Optional[bool] = None
    update_time: Optional[str] = None

    def params(self) -> List[Tuple[str, str]]:
        if self.update_time is not None:
            return [("currentDocument.updateTime", self.update_time)]
        if self.exists is not None:
            return [("currentDocument.exists", "true" if self.exists else "false")]
        return []


MUST_EXIST = Precondition(exists=True)
MUST_NOT_EXIST = Precondition(exists=False)


@dataclass(frozen=True)
class Document:
    name: str
    fields: Dict[str, Any] = field(default_factory=dict)
    update_time: Optional[str] = None

    @property
    def id(self) -> str:
        return self.name.rsplit("/", 1)[-1]

    @classmethod
    def from_wire(cls, raw: Dict[str, Any]) -> Document:
        return cls(
            name=raw.get("name", ""),
            fields=decode_fields(raw.get("fields") or {}),
            update_time=raw.get("updateTime"),
        )


def is_precondition_failure(error: MetadataStoreError) -> bool:
    status = error.details.get("status")
    reason = error.details.get("reason")
    return status in (400, 409, 412) and reason in PRECONDITION_REASONS


# ------------------------------------------------------------
# Client
# ------------------------------------------------------------

class FirestoreRestClient:
    """
    Document REST client bound to one database.

    Paths passed to methods are relative to the documents root, e.g.
    "projects/demo/builds/abc123".
    """

    def __init__(
        self,
        credentials: ServiceAccountCredentials,
        token_cache: Optional[AccessTokenCache] = None,
        base_url: str = FIRESTORE_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.credentials = credentials
        self.token_cache = token_cache or AccessTokenCache(credentials)
        self.documents_root = f"projects/{credentials.project_id}/databases/(default)/documents"
        self.base_url = f"{base_url.rstrip('/')}/{self.documents_root}"
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    # ------------------------------------------------------------
    # Session Management
    # ------------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        params: Optional[Sequence[Tuple[str, str]]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any]:
        """
        Returns:
            (status, decoded JSON body or None)

        Raises:
            MetadataStoreError on transport failures only; HTTP status
            handling is left to the caller.
        """
        session = self._get_session()
        token = await self.token_cache.get_token(session)
        url = f"{self.base_url}/{path}" if path else self.base_url

        try:
            async with session.request(
                method,
                url,
                params=list(params or []),
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            ) as resp:
                text = await resp.text()
                status = resp.status
        except aiohttp.ClientError as e:
            raise MetadataStoreError(f"{operation} request failed: {e}", operation=operation) from e

        if status == 401:
            self.token_cache.invalidate()

        try:
            payload = json.loads(text) if text else None
        except ValueError:
            payload = text
        return status, payload

    @staticmethod
    def _raise_for_status(status: int, payload: Any, operation: str) -> None:
        if 200 <= status < 300:
            return

        reason = None
        message = payload
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            reason = payload["error"].get("status")
            message = payload["error"].get("message", payload)

        raise MetadataStoreError(
            f"{operation} failed: {status} {message}",
            operation=operation,
            details={"status": status, "reason": reason},
        )

    # ------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------

    async def get_document(self, path: str) -> Optional[Document]:
        """None on 404; any other failure raises."""
        status, payload = await self._request("GET", path, "get_document")
        if status == 404:
            return None
        self._raise_for_status(status, payload, "get_document")
        return Document.from_wire(payload)

    async def set_document(
        self,
        path: str,
        data: Dict[str, Any],
        precondition: Optional[Precondition] = None,
    ) -> Document:
        """Create or overwrite the whole document."""
        params = precondition.params() if precondition else []
        status, payload = await self._request(
            "PATCH",
            path,
            "set_document",
            params=params,
            body={"fields": encode_fields(data)},
        )
        self._raise_for_status(status, payload, "set_document")
        return Document.from_wire(payload)

    async def patch_document(
        self,
        path: str,
        data: Dict[str, Any],
        precondition: Optional[Precondition] = MUST_EXIST,
    ) -> Optional[Document]:
        """
        Write only the keys in data (explicit field mask).

        With the default MUST_EXIST precondition a missing document is
        left alone and None is returned.
        """
        params = [("updateMask.fieldPaths", name) for name in data]
        if precondition:
            params.extend(precondition.params())

        status, payload = await self._request(
            "PATCH",
            path,
            "patch_document",
            params=params,
            body={"fields": encode_fields(data)},
        )
        if status == 404 and precondition is not None and precondition.exists:
            return None
        self._raise_for_status(status, payload, "patch_document")
        return Document.from_wire(payload)

    async def delete_document(self, path: str) -> bool:
        """True if deleted, False if it was already gone."""
        status, payload = await self._request("DELETE", path, "delete_document")
        if status == 404:
            return False
        self._raise_for_status(status, payload, "delete_document")
        return True

    async def run_query(self, parent: str, structured_query: Dict[str, Any]) -> List[Document]:
        """
        Run a structuredQuery under parent (a document path, e.g. "projects/demo").
        """
        status, payload = await self._request(
            "POST",
            f"{parent}:runQuery",
            "run_query",
            body={"structuredQuery": structured_query},
        )
        self._raise_for_status(status, payload, "run_query")

        return [
            Document.from_wire(item["document"])
            for item in payload or []
            if isinstance(item, dict) and item.get("document")
        ]


# ------------------------------------------------------------
# Query builders
# ------------------------------------------------------------

def field_filter(field_path: str, op: str, value: Any) -> Dict[str, Any]:
    return {
        "fieldFilter": {
            "field": {"fieldPath": field_path},
            "op": op,
            "value": to_tagged_value(value),
        }
    }


def and_filter(*filters: Dict[str, Any]) -> Dict[str, Any]:
    if len(filters) == 1:
        return filters[0]
    return {"compositeFilter": {"op": "AND", "filters": list(filters)}}


def structured_query(
    collection: str,
    where: Optional[Dict[str, Any]] = None,
    order_by: Optional[str] = None,
    descending: bool = True,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {"from": [{"collectionId": collection}]}
    if where is not None:
        query["where"] = where
    if order_by is not None:
        query["orderBy"] = [{
            "field": {"fieldPath": order_by},
            "direction": "DESCENDING" if descending else "ASCENDING",
        }]
    if limit is not None:
        query["limit"] = limit
    return query


__all__ = [
    "FIRESTORE_BASE_URL",
    "Precondition",
    "MUST_EXIST",
    "MUST_NOT_EXIST",
    "Document",
    "FirestoreRestClient",
    "is_precondition_failure",
    "field_filter",
    "and_filter",
    "structured_query",
]
