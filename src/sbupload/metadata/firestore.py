"""
Build metadata over the Firestore REST API.

Document layout:
    projects/{projectId}/builds/{buildId}   -> build document
    projects/{projectId}/counters/builds    -> {currentBuildNumber}

Numbering guarantee (weaker than SQLiteMetadataStore):
    create_build is read counter -> write counter -> write build, as three
    separate REST calls. Two concurrent creates for the same project can
    read the same counter value and produce duplicate build numbers. This
    window is accepted because per-project upload concurrency is low.

    strict_counter=True closes the window with a compare-and-swap on the
    counter write (updateTime / exists=false precondition) and retries the
    read-compute-write when the precondition fails.

Partial failure:
    If the counter write lands but the build write fails, the number is
    consumed and never reassigned. CounterConsumedError reports it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .base import DEFAULT_LIST_LIMIT, BuildMetadataStore, build_path, counter_path
from .credentials import ServiceAccountCredentials
from .rest import (
    MUST_NOT_EXIST,
    Document,
    FirestoreRestClient,
    Precondition,
    field_filter,
    is_precondition_failure,
    structured_query,
)
from ..core.errors import CounterConsumedError, MetadataConflictError, MetadataStoreError
from ..core.tagged import UNSET
from ..core.types import (
    Build,
    BuildCoverage,
    BuildStatus,
    CreateBuildData,
    UpdateBuildData,
    generate_document_id,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


BUILDS_COLLECTION = "builds"
VERSION_MATCH_LIMIT = 50
MAX_COUNTER_ATTEMPTS = 5
MAX_UPDATE_ATTEMPTS = 5


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return parse_timestamp(str(value))


class FirestoreRestMetadataStore(BuildMetadataStore):

    transactional = False

    def __init__(
        self,
        client: FirestoreRestClient,
        service_account_id: str = "upload-service",
        strict_counter: bool = False,
    ):
        self.client = client
        self.service_account_id = service_account_id
        self.strict_counter = strict_counter

    @classmethod
    def from_credentials(
        cls,
        credentials: ServiceAccountCredentials,
        service_account_id: str = "upload-service",
        strict_counter: bool = False,
    ) -> FirestoreRestMetadataStore:
        return cls(
            FirestoreRestClient(credentials),
            service_account_id=service_account_id,
            strict_counter=strict_counter,
        )

    async def close(self) -> None:
        await self.client.close()

    # ------------------------------------------------------------
    # Counter
    # ------------------------------------------------------------

    async def _read_counter(self, project_id: str) -> Optional[Document]:
        # Any read failure counts as "no counter yet" (number 0).
        try:
            return await self.client.get_document(counter_path(project_id))
        except MetadataStoreError as e:
            logger.debug(f"Counter read for {project_id} failed, starting from 0: {e.message}")
            return None

    @staticmethod
    def _counter_value(doc: Optional[Document]) -> int:
        if doc is None:
            return 0
        value = doc.fields.get("currentBuildNumber")
        return int(value) if value is not None else 0

    async def _advance_counter(self, project_id: str) -> int:
        path = counter_path(project_id)

        if not self.strict_counter:
            next_number = self._counter_value(await self._read_counter(project_id)) + 1
            await self.client.set_document(path, {"currentBuildNumber": next_number})
            return next_number

        for attempt in range(1, MAX_COUNTER_ATTEMPTS + 1):
            doc = await self._read_counter(project_id)
            next_number = self._counter_value(doc) + 1

            if doc is not None and doc.update_time:
                precondition = Precondition(update_time=doc.update_time)
            else:
                precondition = MUST_NOT_EXIST

            try:
                await self.client.set_document(
                    path,
                    {"currentBuildNumber": next_number},
                    precondition=precondition,
                )
                return next_number
            except MetadataStoreError as e:
                if not is_precondition_failure(e):
                    raise
                logger.warning(
                    f"Counter for {project_id} changed concurrently "
                    f"(attempt {attempt}/{MAX_COUNTER_ATTEMPTS}), retrying"
                )

        raise MetadataConflictError(
            f"Counter for {project_id} kept changing after {MAX_COUNTER_ATTEMPTS} attempts",
            operation="create_build",
        )

    async def get_counter(self, project_id: str) -> Optional[int]:
        doc = await self.client.get_document(counter_path(project_id))
        return self._counter_value(doc) if doc is not None else None

    # ------------------------------------------------------------
    # Build Operations
    # ------------------------------------------------------------

    async def create_build(self, project_id: str, data: CreateBuildData) -> Build:
        build_number = await self._advance_counter(project_id)

        build_id = generate_document_id()
        created_at = utc_now()

        fields: Dict[str, Any] = {
            "projectId": project_id,
            "versionId": data.version_id,
            "buildNumber": build_number,
            "zipUrl": data.zip_url,
            "status": BuildStatus.ACTIVE.value,
            "createdAt": created_at,
            "createdBy": self.service_account_id,
            "coverage": data.coverage.to_dict() if data.coverage else UNSET,
        }

        try:
            await self.client.set_document(build_path(project_id, build_id), fields)
        except MetadataStoreError as e:
            logger.warning(
                f"Build #{build_number} for {project_id} was numbered but not written: {e.message}"
            )
            raise CounterConsumedError(
                f"Build number {build_number} consumed but build not written: {e.message}",
                project_id=project_id,
                build_number=build_number,
            ) from e

        logger.info(f"Created build #{build_number} ({build_id}) for project {project_id}")

        return Build(
            id=build_id,
            project_id=project_id,
            version_id=data.version_id,
            build_number=build_number,
            zip_url=data.zip_url,
            status=BuildStatus.ACTIVE,
            created_at=created_at,
            created_by=self.service_account_id,
            coverage=data.coverage,
        )

    async def get_build(self, project_id: str, build_id: str) -> Optional[Build]:
        doc = await self.client.get_document(build_path(project_id, build_id))
        return self._doc_to_build(doc, project_id) if doc is not None else None

    async def _query_builds(
        self,
        project_id: str,
        where: Optional[Dict[str, Any]],
        order_by: Optional[str],
        limit: int,
    ) -> List[Build]:
        docs = await self.client.run_query(
            f"projects/{project_id}",
            structured_query(BUILDS_COLLECTION, where=where, order_by=order_by, limit=limit),
        )
        return [self._doc_to_build(d, project_id) for d in docs]

    async def get_project_builds(
        self,
        project_id: str,
        status_filter: Optional[BuildStatus] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[Build]:
        if limit < 1 or limit > 1000:
            raise ValueError("limit must be between 1 and 1000")

        where = None
        if status_filter is not None:
            where = field_filter("status", "EQUAL", BuildStatus(status_filter).value)
        return await self._query_builds(project_id, where, "buildNumber", limit)

    async def get_build_by_version(self, project_id: str, version_id: str) -> Optional[Build]:
        # Equality only; ordering server-side would need a composite index.
        builds = await self._query_builds(
            project_id,
            field_filter("versionId", "EQUAL", version_id),
            None,
            VERSION_MATCH_LIMIT,
        )
        if not builds:
            return None
        return max(builds, key=lambda b: b.build_number)

    async def get_latest_build(self, project_id: str) -> Optional[Build]:
        builds = await self._query_builds(
            project_id,
            field_filter("status", "EQUAL", BuildStatus.ACTIVE.value),
            "buildNumber",
            1,
        )
        return builds[0] if builds else None

    async def update_build(self, project_id: str, build_id: str, updates: UpdateBuildData) -> None:
        fields = updates.fields()
        if not fields:
            return
        if "status" in fields:
            await self._update_if_active(project_id, build_id, fields)
            return
        doc = await self.client.patch_document(build_path(project_id, build_id), fields)
        if doc is None:
            logger.debug(f"update_build: no build {build_id} in project {project_id}")

    async def _update_if_active(self, project_id: str, build_id: str, fields: Dict[str, Any]) -> None:
        """
        Status changes apply only to active builds. The patch is pinned to
        the updateTime that was read, so a concurrent archive cannot be
        overwritten.
        """
        path = build_path(project_id, build_id)

        for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
            doc = await self.client.get_document(path)
            if doc is None or doc.fields.get("status") != BuildStatus.ACTIVE.value:
                logger.debug(f"update_build: no active build {build_id} in project {project_id}")
                return
            try:
                await self.client.patch_document(path, fields, precondition=Precondition(update_time=doc.update_time))
                return
            except MetadataStoreError as e:
                if not is_precondition_failure(e):
                    raise
                logger.warning(
                    f"Build {build_id} changed concurrently "
                    f"(attempt {attempt}/{MAX_UPDATE_ATTEMPTS}), re-reading"
                )

        raise MetadataConflictError(
            f"Build {build_id} kept changing after {MAX_UPDATE_ATTEMPTS} attempts",
            operation="update_build",
        )

    async def update_build_coverage(
        self,
        project_id: str,
        build_id: str,
        coverage: BuildCoverage,
    ) -> None:
        await self.update_build(project_id, build_id, UpdateBuildData(coverage=coverage))

    async def archive_build(self, project_id: str, build_id: str, user_id: str) -> None:
        await self.update_build(
            project_id,
            build_id,
            UpdateBuildData(
                status=BuildStatus.ARCHIVED,
                archived_at=utc_now(),
                archived_by=user_id,
            ),
        )

    async def delete_build(self, project_id: str, build_id: str) -> None:
        await self.client.delete_document(build_path(project_id, build_id))

    # ------------------------------------------------------------
    # Document Mapping
    # ------------------------------------------------------------

    @staticmethod
    def _doc_to_build(doc: Document, project_id: str) -> Build:
        f = doc.fields
        coverage = f.get("coverage")
        return Build(
            id=doc.id,
            project_id=f.get("projectId") or project_id,
            version_id=f.get("versionId", ""),
            build_number=int(f.get("buildNumber", 0)),
            zip_url=f.get("zipUrl", ""),
            status=BuildStatus(f.get("status", BuildStatus.ACTIVE.value)),
            created_at=_timestamp(f.get("createdAt")) or utc_now(),
            created_by=f.get("createdBy", ""),
            archived_at=_timestamp(f.get("archivedAt")),
            archived_by=f.get("archivedBy"),
            coverage=BuildCoverage.from_dict(coverage) if coverage else None,
        )


__all__ = ["FirestoreRestMetadataStore"]
