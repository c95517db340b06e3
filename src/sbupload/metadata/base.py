from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from ..core.types import (
    Build,
    BuildCoverage,
    BuildStatus,
    CreateBuildData,
    UpdateBuildData,
)


DEFAULT_LIST_LIMIT = 50

COUNTER_DOCUMENT = "builds"


def build_path(project_id: str, build_id: str) -> str:
    return f"projects/{project_id}/builds/{build_id}"


def counter_path(project_id: str) -> str:
    return f"projects/{project_id}/counters/{COUNTER_DOCUMENT}"


# ============================================================
# Metadata Store
# ============================================================

class BuildMetadataStore(ABC):
    """
    Build records and per-project build numbering.

    Every method is a coroutine and may suspend for a network or disk
    round trip. Reads return None (or an empty list) for missing data;
    backend faults raise MetadataStoreError.

    Numbering guarantee differs per implementation:
        - transactional stores: strictly increasing, never duplicated
        - the REST store: increasing, but concurrent creates for one
          project may duplicate a number (see FirestoreRestMetadataStore)
    """

    #: True when create_build serializes counter access.
    transactional: bool = False

    @abstractmethod
    async def create_build(self, project_id: str, data: CreateBuildData) -> Build:
        """
        Assign the next build number for project_id and persist a new build.

        Numbers start at 1 and are never reused, including after deletion.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_build(self, project_id: str, build_id: str) -> Optional[Build]:
        raise NotImplementedError

    @abstractmethod
    async def get_project_builds(
        self,
        project_id: str,
        status_filter: Optional[BuildStatus] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[Build]:
        raise NotImplementedError

    @abstractmethod
    async def get_build_by_version(self, project_id: str, version_id: str) -> Optional[Build]:
        """
        Build for a version. When several builds share the version, the
        one with the highest build number wins.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_latest_build(self, project_id: str) -> Optional[Build]:
        """Highest-numbered build whose status is active."""
        raise NotImplementedError

    @abstractmethod
    async def update_build(self, project_id: str, build_id: str, updates: UpdateBuildData) -> None:
        """Write only the provided fields. Missing builds are a no-op."""
        raise NotImplementedError

    @abstractmethod
    async def update_build_coverage(
        self,
        project_id: str,
        build_id: str,
        coverage: BuildCoverage,
    ) -> None:
        """Replace the whole coverage value. Missing builds are a no-op."""
        raise NotImplementedError

    @abstractmethod
    async def archive_build(self, project_id: str, build_id: str, user_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete_build(self, project_id: str, build_id: str) -> None:
        """Hard delete. The counter is left untouched."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
