"""
Coverage normalizer tests.
"""

import pytest

from sbupload.core.coverage import (
    CoverageShape,
    decode_coverage_json,
    normalize_coverage_input,
    parse_coverage_input,
)
from sbupload.core.errors import CoverageValidationError, ErrorCode

from conftest import flat_coverage_payload, nested_coverage_payload


STORED_URL = "https://cdn.example.com/demo/v1/coverage-report.json"


class TestShapes:

    def test_flat_shape_detected(self, flat_coverage):
        assert parse_coverage_input(flat_coverage).shape is CoverageShape.FLAT

    def test_nested_shape_detected(self, nested_coverage):
        assert parse_coverage_input(nested_coverage).shape is CoverageShape.NESTED

    def test_both_shapes_normalize_to_same_summary(self, flat_coverage, nested_coverage):
        flat = normalize_coverage_input(flat_coverage, STORED_URL)
        nested = normalize_coverage_input(nested_coverage, STORED_URL)

        assert flat.summary == nested.summary
        assert flat.summary.to_dict() == {
            "componentCoverage": 0.9,
            "propCoverage": 0.8,
            "variantCoverage": 0.7,
            "passRate": 0.95,
            "totalComponents": 10,
            "componentsWithStories": 9,
            "failingStories": 1,
        }

    def test_payload_report_url_is_ignored(self, flat_coverage, nested_coverage):
        nested_coverage["reportUrl"] = "https://elsewhere.example.com/x.json"

        for payload in (flat_coverage, nested_coverage):
            assert normalize_coverage_input(payload, STORED_URL).report_url == STORED_URL

    def test_generated_at_passes_through_verbatim(self):
        payload = flat_coverage_payload(generatedAt="not really a date")
        assert normalize_coverage_input(payload, STORED_URL).generated_at == "not really a date"

    def test_quality_gate_checks_kept(self, flat_coverage):
        gate = normalize_coverage_input(flat_coverage, STORED_URL).quality_gate
        assert gate.passed is True
        assert [c.name for c in gate.checks] == ["componentCoverage"]
        assert gate.checks[0].threshold == 0.8

    def test_to_dict_is_canonical_shape(self, nested_coverage):
        data = normalize_coverage_input(nested_coverage, STORED_URL).to_dict()
        assert set(data) == {"reportUrl", "summary", "qualityGate", "generatedAt"}
        assert "metrics" not in data["summary"]

    def test_empty_report_url_rejected(self, flat_coverage):
        with pytest.raises(ValueError):
            normalize_coverage_input(flat_coverage, "")


class TestValidation:

    def test_non_numeric_summary_field(self, flat_coverage):
        flat_coverage["summary"]["totalComponents"] = "ten"

        with pytest.raises(CoverageValidationError) as exc_info:
            parse_coverage_input(flat_coverage)

        err = exc_info.value
        assert err.http_status == 400
        assert err.error_code is ErrorCode.INVALID_COVERAGE
        assert err.issues[0]["path"] == "summary.totalComponents"

    def test_boolean_is_not_a_number(self, flat_coverage):
        flat_coverage["summary"]["passRate"] = True
        with pytest.raises(CoverageValidationError):
            parse_coverage_input(flat_coverage)

    def test_nan_rejected(self, flat_coverage):
        flat_coverage["summary"]["propCoverage"] = float("nan")
        with pytest.raises(CoverageValidationError):
            parse_coverage_input(flat_coverage)

    def test_missing_nested_health(self, nested_coverage):
        del nested_coverage["summary"]["health"]

        with pytest.raises(CoverageValidationError) as exc_info:
            parse_coverage_input(nested_coverage)

        assert "summary.health" in [i["path"] for i in exc_info.value.issues]

    def test_all_issues_reported(self):
        payload = {"summary": {}, "qualityGate": {"passed": "yes"}}

        with pytest.raises(CoverageValidationError) as exc_info:
            parse_coverage_input(payload)

        paths = {i["path"] for i in exc_info.value.issues}
        assert "summary.componentCoverage" in paths
        assert "qualityGate.passed" in paths
        assert "qualityGate.checks" in paths
        assert "generatedAt" in paths

    def test_bad_check_entry(self, flat_coverage):
        flat_coverage["qualityGate"]["checks"].append({"name": "x", "threshold": 1, "actual": "a", "passed": True})

        with pytest.raises(CoverageValidationError) as exc_info:
            parse_coverage_input(flat_coverage)

        assert exc_info.value.issues[0]["path"] == "qualityGate.checks.1.actual"

    @pytest.mark.parametrize("payload", [None, [], "coverage", 3])
    def test_non_object_payload(self, payload):
        with pytest.raises(CoverageValidationError):
            parse_coverage_input(payload)

    def test_metrics_present_but_not_object(self, nested_coverage):
        nested_coverage["summary"]["metrics"] = 5
        with pytest.raises(CoverageValidationError):
            parse_coverage_input(nested_coverage)


class TestDecodeJson:

    def test_valid_bytes(self):
        assert decode_coverage_json(b'{"a": 1}') == {"a": 1}

    def test_invalid_json(self):
        with pytest.raises(CoverageValidationError) as exc_info:
            decode_coverage_json(b"{not json")
        assert exc_info.value.message == "Invalid coverage JSON"

    def test_invalid_utf8(self):
        with pytest.raises(CoverageValidationError):
            decode_coverage_json(b"\xff\xfe\xfa")
