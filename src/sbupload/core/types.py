from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import InvalidParameterError


AUTO_ID_ALPHABET = string.ascii_letters + string.digits
AUTO_ID_LENGTH = 20


def generate_document_id() -> str:
    """Random 20-character alphanumeric id, the document-store auto-id shape."""
    return "".join(secrets.choice(AUTO_ID_ALPHABET) for _ in range(AUTO_ID_LENGTH))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(ts: str) -> datetime:
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    # Backends may return nanosecond precision; fromisoformat takes at most 6 digits.
    if "." in ts:
        head, _, tail = ts.partition(".")
        digits = "".join(c for c in tail if c.isdigit())
        offset = tail[len(digits):]
        ts = f"{head}.{digits[:6]}{offset}"
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# -----------------------------
# Enums
# -----------------------------
class BuildStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


# -----------------------------
# Coverage
# -----------------------------
@dataclass(frozen=True)
class CoverageSummary:
    """Fixed seven-field summary stored on every build that has coverage."""
    component_coverage: float
    prop_coverage: float
    variant_coverage: float
    pass_rate: float
    total_components: int
    components_with_stories: int
    failing_stories: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "componentCoverage": self.component_coverage,
            "propCoverage": self.prop_coverage,
            "variantCoverage": self.variant_coverage,
            "passRate": self.pass_rate,
            "totalComponents": self.total_components,
            "componentsWithStories": self.components_with_stories,
            "failingStories": self.failing_stories,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CoverageSummary:
        return cls(
            component_coverage=data["componentCoverage"],
            prop_coverage=data["propCoverage"],
            variant_coverage=data["variantCoverage"],
            pass_rate=data["passRate"],
            total_components=data["totalComponents"],
            components_with_stories=data["componentsWithStories"],
            failing_stories=data["failingStories"],
        )


@dataclass(frozen=True)
class QualityGateCheck:
    name: str
    threshold: float
    actual: float
    passed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "threshold": self.threshold,
            "actual": self.actual,
            "passed": self.passed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> QualityGateCheck:
        return cls(
            name=data["name"],
            threshold=data["threshold"],
            actual=data["actual"],
            passed=data["passed"],
        )


@dataclass(frozen=True)
class QualityGateResult:
    passed: bool
    checks: List[QualityGateCheck] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "checks": [c.to_dict() for c in self.checks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> QualityGateResult:
        return cls(
            passed=data["passed"],
            checks=[QualityGateCheck.from_dict(c) for c in data.get("checks") or []],
        )


@dataclass(frozen=True)
class BuildCoverage:
    """
    Normalized coverage snapshot attached to a build.

    report_url always points at the copy stored by this service, never at
    a URL supplied inside the uploaded payload.
    """
    report_url: str
    summary: CoverageSummary
    quality_gate: QualityGateResult
    generated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reportUrl": self.report_url,
            "summary": self.summary.to_dict(),
            "qualityGate": self.quality_gate.to_dict(),
            "generatedAt": self.generated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> BuildCoverage:
        return cls(
            report_url=data["reportUrl"],
            summary=CoverageSummary.from_dict(data["summary"]),
            quality_gate=QualityGateResult.from_dict(data["qualityGate"]),
            generated_at=data["generatedAt"],
        )


# -----------------------------
# Core Data Types
# -----------------------------
@dataclass(frozen=True)
class Build:
    """
    One uploaded Storybook archive for a project/version pair.

    build_number is unique within project_id and is never reused, even
    after the build is deleted.
    """
    id: str
    project_id: str
    version_id: str
    build_number: int
    zip_url: str
    status: BuildStatus
    created_at: datetime
    created_by: str
    archived_at: Optional[datetime] = None
    archived_by: Optional[str] = None
    coverage: Optional[BuildCoverage] = None

    @property
    def is_active(self) -> bool:
        return self.status is BuildStatus.ACTIVE

    def to_public_dict(self) -> Dict[str, Any]:
        """
        Stable public projection for API/CLI JSON output.
        """
        data: Dict[str, Any] = {
            "id": self.id,
            "projectId": self.project_id,
            "versionId": self.version_id,
            "buildNumber": self.build_number,
            "zipUrl": self.zip_url,
            "status": self.status.value,
            "createdAt": format_timestamp(self.created_at),
            "createdBy": self.created_by,
        }
        if self.archived_at is not None:
            data["archivedAt"] = format_timestamp(self.archived_at)
        if self.archived_by is not None:
            data["archivedBy"] = self.archived_by
        if self.coverage is not None:
            data["coverage"] = self.coverage.to_dict()
        return data


@dataclass(frozen=True)
class CreateBuildData:
    version_id: str
    zip_url: str
    coverage: Optional[BuildCoverage] = None


@dataclass(frozen=True)
class UpdateBuildData:
    """
    Partial update. Only fields that are not None are written.

    status may only be set to ARCHIVED: archiving is one-way, and stores
    apply it only to builds that are still active.
    """
    status: Optional[BuildStatus] = None
    zip_url: Optional[str] = None
    archived_at: Optional[datetime] = None
    archived_by: Optional[str] = None
    coverage: Optional[BuildCoverage] = None

    def __post_init__(self):
        if self.status is not None and BuildStatus(self.status) is not BuildStatus.ARCHIVED:
            raise InvalidParameterError(
                "Archived builds cannot be reactivated; status may only be set to archived",
                parameter="status",
            )

    def fields(self) -> Dict[str, Any]:
        """Provided fields keyed by stored (camelCase) name, in native form."""
        out: Dict[str, Any] = {}
        if self.status is not None:
            out["status"] = BuildStatus(self.status).value
        if self.zip_url is not None:
            out["zipUrl"] = self.zip_url
        if self.archived_at is not None:
            out["archivedAt"] = self.archived_at
        if self.archived_by is not None:
            out["archivedBy"] = self.archived_by
        if self.coverage is not None:
            out["coverage"] = self.coverage.to_dict()
        return out


@dataclass(frozen=True)
class UploadResult:
    """Result of storing bytes in the blob store."""
    url: str
    path: str
    version_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"url": self.url, "path": self.path}
        if self.version_id:
            data["versionId"] = self.version_id
        return data


@dataclass(frozen=True)
class PresignedUpload:
    url: str
    key: str

    @property
    def object_url(self) -> str:
        """The URL with its query string removed: where the object will live."""
        return self.url.split("?", 1)[0]
