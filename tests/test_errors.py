"""
Error system tests.

CRITICAL: fingerprints and exit codes are consumed by CI scripts and
log aggregation. They must not drift with message wording.
"""

import pytest

from sbupload.core.errors import (
    BlobStoreError,
    ConfigError,
    CounterConsumedError,
    CoverageValidationError,
    ErrorCategory,
    ErrorCode,
    ExitCode,
    InvalidParameterError,
    MetadataConflictError,
    MetadataStoreError,
    SBUploadError,
    TokenExchangeError,
)


class TestFingerprint:

    def test_independent_of_message(self):
        a = MetadataStoreError("connection reset", operation="get_build")
        b = MetadataStoreError("deadline exceeded", operation="get_build")
        assert a.fingerprint == b.fingerprint

    def test_depends_on_operation(self):
        a = MetadataStoreError("boom", operation="get_build")
        b = MetadataStoreError("boom", operation="create_build")
        assert a.fingerprint != b.fingerprint

    def test_shape(self):
        assert len(ConfigError("x").fingerprint) == 16


class TestStatusAndExitCodes:

    @pytest.mark.parametrize("error, status, exit_code", [
        (CoverageValidationError("bad"), 400, ExitCode.USER_ERROR),
        (InvalidParameterError("bad"), 400, ExitCode.USER_ERROR),
        (ConfigError("bad"), 500, ExitCode.CONFIG_ERROR),
        (MetadataStoreError("bad"), 502, ExitCode.BACKEND_ERROR),
        (MetadataConflictError("bad"), 409, ExitCode.BACKEND_ERROR),
        (TokenExchangeError("bad"), 502, ExitCode.AUTH_ERROR),
        (BlobStoreError("bad"), 502, ExitCode.BACKEND_ERROR),
    ])
    def test_mapping(self, error, status, exit_code):
        assert error.http_status == status
        assert error.exit_code is exit_code

    def test_counter_consumed_is_metadata_error(self):
        err = CounterConsumedError("write failed", project_id="demo", build_number=7)

        assert isinstance(err, MetadataStoreError)
        assert err.error_code is ErrorCode.COUNTER_CONSUMED
        assert err.build_number == 7
        assert err.context == {"project_id": "demo", "build_number": 7, "operation": "create_build"}


class TestOutput:

    def test_to_json(self):
        err = CoverageValidationError("Invalid coverage", issues=[{"path": "summary", "message": "Required"}])
        data = err.to_json()

        assert data["error"] == "Invalid coverage"
        assert data["code"] == "E1001"
        assert data["category"] == ErrorCategory.USER.value
        assert data["status"] == 400
        assert data["fingerprint"] == err.fingerprint
        assert data["issues"][0]["path"] == "summary"
        assert err.issues == [{"path": "summary", "message": "Required"}]

    def test_to_json_carries_context_not_details(self):
        err = MetadataStoreError("boom", operation="get_build", details={"status": 503, "reason": "UNAVAILABLE"})
        data = err.to_json()

        assert data["context"] == {"operation": "get_build"}
        assert data["status"] == 502
        assert "details" not in data
        assert "issues" not in data

    def test_format_includes_context(self):
        text = BlobStoreError("upload failed", key="demo/v1/storybook.zip").format()
        assert text.startswith("BlobStoreError: upload failed")
        assert "key: demo/v1/storybook.zip" in text

    def test_str_is_message(self):
        assert str(ConfigError("missing bucket")) == "missing bucket"

    def test_enum_types_enforced(self):
        with pytest.raises(TypeError):
            SBUploadError(
                message="x",
                error_code="E1001",
                category=ErrorCategory.USER,
                exit_code=ExitCode.USER_ERROR,
            )
