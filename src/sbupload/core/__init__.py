"""Core primitives for sbupload."""

from .types import (
    Build,
    BuildStatus,
    BuildCoverage,
    CoverageSummary,
    QualityGateCheck,
    QualityGateResult,
    CreateBuildData,
    UpdateBuildData,
    UploadResult,
    PresignedUpload,
)
from .coverage import normalize_coverage_input, parse_coverage_input
from .tagged import from_tagged_value, to_tagged_value
from .errors import (
    SBUploadError,
    CoverageValidationError,
    MetadataStoreError,
    InternalError,
)

__all__ = [
    "Build",
    "BuildStatus",
    "BuildCoverage",
    "CoverageSummary",
    "QualityGateCheck",
    "QualityGateResult",
    "CreateBuildData",
    "UpdateBuildData",
    "UploadResult",
    "PresignedUpload",
    "normalize_coverage_input",
    "parse_coverage_input",
    "from_tagged_value",
    "to_tagged_value",
    "SBUploadError",
    "CoverageValidationError",
    "MetadataStoreError",
    "InternalError",
]
