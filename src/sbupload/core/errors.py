"""
sbupload Error System

Design goals:
- Single canonical error code namespace (E#### format only)
- Explicit category per error (not prefix-derived)
- Stable HTTP status per class for the upload API
- Stable exit codes for CLI integration
- Deterministic fingerprinting (not message-based)
- Original backend messages preserved for diagnosis
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


# ---------------------------------------------------------------------
# Exit Codes (Process-Level Contract)
# ---------------------------------------------------------------------

class ExitCode(int, Enum):
    """
    Stable process exit codes.
    These values are part of the public CLI contract.
    """
    OK = 0

    USER_ERROR = 1
    CONFIG_ERROR = 2
    BACKEND_ERROR = 3
    AUTH_ERROR = 4

    INTERNAL_ERROR = 99


# ---------------------------------------------------------------------
# Error Categories (Explicit, Not Derived)
# ---------------------------------------------------------------------

class ErrorCategory(str, Enum):
    USER = "user_error"
    CONFIG = "config_error"
    BACKEND = "backend_error"
    STORAGE = "storage_error"
    AUTH = "auth_error"
    INTERNAL = "internal_error"


# ---------------------------------------------------------------------
# Canonical Error Codes (Single Namespace)
# ---------------------------------------------------------------------

class ErrorCode(str, Enum):
    # 1xxx – User / Input
    INVALID_COVERAGE = "E1001"
    INVALID_PARAMETER = "E1002"

    # 2xxx – Configuration
    INVALID_CONFIG = "E2001"

    # 3xxx – Metadata backend
    METADATA_FAILED = "E3001"
    COUNTER_CONSUMED = "E3002"
    METADATA_CONFLICT = "E3003"

    # 4xxx – Auth / Blob storage
    TOKEN_EXCHANGE_FAILED = "E4001"
    BLOB_FAILED = "E4002"

    # 9xxx – Internal
    INTERNAL_ERROR = "E9001"


# ---------------------------------------------------------------------
# Base Error
# ---------------------------------------------------------------------

_ENUM_FIELDS = (
    ("error_code", ErrorCode),
    ("category", ErrorCategory),
    ("exit_code", ExitCode),
)


@dataclass
class SBUploadError(Exception):
    """
    Base class for all sbupload domain errors.

    The same error object drives the API response body (to_json), the
    CLI exit status (exit_code) and the debug dump (format).

    fingerprint hashes error_code, stage and signature only; two failures
    of the same operation group together however the backend words them.
    """

    message: str
    error_code: ErrorCode
    category: ErrorCategory
    exit_code: ExitCode
    http_status: int = 500
    stage: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    details: Optional[Dict[str, Any]] = None
    signature: Optional[str] = None

    def __post_init__(self):
        for name, enum_type in _ENUM_FIELDS:
            if not isinstance(getattr(self, name), enum_type):
                raise TypeError(f"{name} must be a {enum_type.__name__}")

        self.context = dict(self.context or {})
        self.details = dict(self.details or {})
        super().__init__(self.message)

    @property
    def fingerprint(self) -> str:
        key = "|".join((self.error_code.value, self.stage or "", self.signature or ""))
        return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]

    def to_json(self) -> Dict[str, Any]:
        """
        API error body. "error" carries the message; validation issues are
        lifted to the top level so clients can point at the bad field.
        """
        body: Dict[str, Any] = {
            "error": self.message,
            "code": self.error_code.value,
            "category": self.category.value,
            "status": self.http_status,
            "fingerprint": self.fingerprint,
        }
        if "issues" in self.details:
            body["issues"] = self.details["issues"]
        if self.context:
            body["context"] = self.context
        return body

    def format(self) -> str:
        """Multi-line dump for --debug output."""
        header = f"{type(self).__name__}: {self.message}"
        fields = {
            "code": self.error_code.value,
            "fingerprint": self.fingerprint,
            "stage": self.stage,
            **self.context,
            **self.details,
        }
        body = [f"  {k}: {v}" for k, v in fields.items() if v is not None]
        return "\n".join([header, *body])


# ---------------------------------------------------------------------
# Domain-Specific Errors
# ---------------------------------------------------------------------

class CoverageValidationError(SBUploadError):
    def __init__(self, message: str, issues: Optional[list] = None, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_COVERAGE,
            category=ErrorCategory.USER,
            exit_code=ExitCode.USER_ERROR,
            http_status=400,
            stage="coverage",
            details={"issues": issues} if issues else None,
            **kwargs,
        )

    @property
    def issues(self) -> list:
        return list(self.details.get("issues", []))


class InvalidParameterError(SBUploadError):
    def __init__(self, message: str, parameter: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_PARAMETER,
            category=ErrorCategory.USER,
            exit_code=ExitCode.USER_ERROR,
            http_status=400,
            context={"parameter": parameter} if parameter else None,
            **kwargs,
        )


class ConfigError(SBUploadError):
    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_CONFIG,
            category=ErrorCategory.CONFIG,
            exit_code=ExitCode.CONFIG_ERROR,
            http_status=500,
            stage="config",
            **kwargs,
        )


class MetadataStoreError(SBUploadError):
    """Backend fault from a metadata store. The backend message is kept verbatim."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.METADATA_FAILED)
        kwargs.setdefault("http_status", 502)
        context = kwargs.pop("context", None) or {}
        if operation:
            context["operation"] = operation
        super().__init__(
            message=message,
            category=ErrorCategory.BACKEND,
            exit_code=ExitCode.BACKEND_ERROR,
            stage="metadata",
            signature=operation,
            context=context or None,
            **kwargs,
        )


class CounterConsumedError(MetadataStoreError):
    """
    The per-project counter advanced but the build document was not written.

    The consumed number is never reassigned; it stays a permanent gap.
    """

    def __init__(self, message: str, project_id: str, build_number: int, **kwargs):
        super().__init__(
            message,
            operation="create_build",
            error_code=ErrorCode.COUNTER_CONSUMED,
            context={"project_id": project_id, "build_number": build_number},
            **kwargs,
        )
        self.project_id = project_id
        self.build_number = build_number


class MetadataConflictError(MetadataStoreError):
    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            operation=operation,
            error_code=ErrorCode.METADATA_CONFLICT,
            http_status=409,
            **kwargs,
        )


class TokenExchangeError(SBUploadError):
    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.TOKEN_EXCHANGE_FAILED,
            category=ErrorCategory.AUTH,
            exit_code=ExitCode.AUTH_ERROR,
            http_status=502,
            stage="auth",
            **kwargs,
        )


class BlobStoreError(SBUploadError):
    def __init__(self, message: str, key: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.BLOB_FAILED,
            category=ErrorCategory.STORAGE,
            exit_code=ExitCode.BACKEND_ERROR,
            http_status=502,
            stage="blob",
            context={"key": key} if key else None,
            **kwargs,
        )


class InternalError(SBUploadError):
    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.INTERNAL_ERROR,
            category=ErrorCategory.INTERNAL,
            exit_code=ExitCode.INTERNAL_ERROR,
            http_status=500,
            **kwargs,
        )


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

__all__ = [
    "ExitCode",
    "ErrorCategory",
    "ErrorCode",
    "SBUploadError",
    "CoverageValidationError",
    "InvalidParameterError",
    "ConfigError",
    "MetadataStoreError",
    "CounterConsumedError",
    "MetadataConflictError",
    "TokenExchangeError",
    "BlobStoreError",
    "InternalError",
]
