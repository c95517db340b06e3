"""
Coverage report normalization.

Accepted input shapes:
- flat:   summary carries all seven fields directly
- nested: summary.metrics holds the three ratios, summary.health holds
          passRate/failingStories, totals sit directly under summary

Shape detection looks only at whether summary.metrics is present.

Any reportUrl inside the payload is ignored. The stored report URL is
always the one supplied by the caller (where the raw JSON was persisted).
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import CoverageValidationError
from .types import BuildCoverage, CoverageSummary, QualityGateCheck, QualityGateResult


class CoverageShape(str, Enum):
    FLAT = "flat"
    NESTED = "nested"


@dataclass(frozen=True)
class CoverageIssue:
    """One validation failure, addressed by a dotted path into the payload."""
    path: str
    code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "code": self.code, "message": self.message}


@dataclass(frozen=True)
class CoverageInput:
    """A validated payload, not yet bound to a stored report URL."""
    shape: CoverageShape
    summary: CoverageSummary
    quality_gate: QualityGateResult
    generated_at: str

    def normalize(self, report_url: str) -> BuildCoverage:
        if not isinstance(report_url, str) or not report_url:
            raise ValueError("report_url must be a non-empty string")
        return BuildCoverage(
            report_url=report_url,
            summary=self.summary,
            quality_gate=self.quality_gate,
            generated_at=self.generated_at,
        )


# ------------------------------------------------------------
# Field checks
# ------------------------------------------------------------

def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


class _Checker:
    def __init__(self) -> None:
        self.issues: List[CoverageIssue] = []

    def fail(self, path: str, code: str, message: str) -> None:
        self.issues.append(CoverageIssue(path=path, code=code, message=message))

    def obj(self, parent: Any, key: str, path: str) -> Optional[Dict[str, Any]]:
        value = parent.get(key) if isinstance(parent, dict) else None
        if not isinstance(value, dict):
            self.fail(path, "invalid_type", f"{path} must be an object")
            return None
        return value

    def number(self, parent: Optional[Dict[str, Any]], key: str, path: str) -> Any:
        if parent is None:
            return None
        if key not in parent:
            self.fail(path, "required", f"{path} is required")
            return None
        value = parent[key]
        if not _is_number(value):
            self.fail(path, "invalid_type", f"{path} must be a finite number")
            return None
        return value

    def boolean(self, parent: Optional[Dict[str, Any]], key: str, path: str) -> Any:
        if parent is None:
            return None
        value = parent.get(key)
        if not isinstance(value, bool):
            self.fail(path, "invalid_type", f"{path} must be a boolean")
            return None
        return value

    def string(self, parent: Optional[Dict[str, Any]], key: str, path: str) -> Any:
        if parent is None:
            return None
        value = parent.get(key)
        if not isinstance(value, str):
            self.fail(path, "invalid_type", f"{path} must be a string")
            return None
        return value


def _parse_summary(check: _Checker, payload: Dict[str, Any]):
    summary = check.obj(payload, "summary", "summary")
    if summary is None:
        return CoverageShape.FLAT, None

    if summary.get("metrics") is not None:
        metrics = check.obj(summary, "metrics", "summary.metrics")
        health = check.obj(summary, "health", "summary.health")
        values = {
            "component_coverage": check.number(metrics, "componentCoverage", "summary.metrics.componentCoverage"),
            "prop_coverage": check.number(metrics, "propCoverage", "summary.metrics.propCoverage"),
            "variant_coverage": check.number(metrics, "variantCoverage", "summary.metrics.variantCoverage"),
            "pass_rate": check.number(health, "passRate", "summary.health.passRate"),
            "total_components": check.number(summary, "totalComponents", "summary.totalComponents"),
            "components_with_stories": check.number(summary, "componentsWithStories", "summary.componentsWithStories"),
            "failing_stories": check.number(health, "failingStories", "summary.health.failingStories"),
        }
        shape = CoverageShape.NESTED
    else:
        values = {
            "component_coverage": check.number(summary, "componentCoverage", "summary.componentCoverage"),
            "prop_coverage": check.number(summary, "propCoverage", "summary.propCoverage"),
            "variant_coverage": check.number(summary, "variantCoverage", "summary.variantCoverage"),
            "pass_rate": check.number(summary, "passRate", "summary.passRate"),
            "total_components": check.number(summary, "totalComponents", "summary.totalComponents"),
            "components_with_stories": check.number(summary, "componentsWithStories", "summary.componentsWithStories"),
            "failing_stories": check.number(summary, "failingStories", "summary.failingStories"),
        }
        shape = CoverageShape.FLAT

    if check.issues:
        return shape, None
    return shape, CoverageSummary(**values)


def _parse_quality_gate(check: _Checker, payload: Dict[str, Any]) -> Optional[QualityGateResult]:
    gate = check.obj(payload, "qualityGate", "qualityGate")
    if gate is None:
        return None

    before = len(check.issues)
    passed = check.boolean(gate, "passed", "qualityGate.passed")

    raw_checks = gate.get("checks")
    checks: List[QualityGateCheck] = []
    if not isinstance(raw_checks, list):
        check.fail("qualityGate.checks", "invalid_type", "qualityGate.checks must be an array")
    else:
        for i, item in enumerate(raw_checks):
            path = f"qualityGate.checks.{i}"
            if not isinstance(item, dict):
                check.fail(path, "invalid_type", f"{path} must be an object")
                continue
            name = check.string(item, "name", f"{path}.name")
            threshold = check.number(item, "threshold", f"{path}.threshold")
            actual = check.number(item, "actual", f"{path}.actual")
            ok = check.boolean(item, "passed", f"{path}.passed")
            checks.append(QualityGateCheck(name=name, threshold=threshold, actual=actual, passed=ok))

    if len(check.issues) > before:
        return None
    return QualityGateResult(passed=passed, checks=checks)


# ------------------------------------------------------------
# Public API
# ------------------------------------------------------------

def parse_coverage_input(payload: Any) -> CoverageInput:
    """
    Validate a decoded coverage payload.

    Raises:
        CoverageValidationError: with every failing field listed in .issues
    """
    if not isinstance(payload, dict):
        raise CoverageValidationError(
            "Coverage payload must be a JSON object",
            issues=[CoverageIssue("", "invalid_type", "payload must be an object").to_dict()],
        )

    check = _Checker()
    shape, summary = _parse_summary(check, payload)
    quality_gate = _parse_quality_gate(check, payload)
    generated_at = check.string(payload, "generatedAt", "generatedAt")

    if check.issues:
        raise CoverageValidationError(
            f"Invalid coverage payload: {check.issues[0].message}",
            issues=[i.to_dict() for i in check.issues],
        )

    return CoverageInput(
        shape=shape,
        summary=summary,
        quality_gate=quality_gate,
        generated_at=generated_at,
    )


def normalize_coverage_input(payload: Any, report_url: str) -> BuildCoverage:
    """Validate payload and bind it to the canonical stored report URL."""
    return parse_coverage_input(payload).normalize(report_url)


def decode_coverage_json(raw: Union[bytes, str]) -> Any:
    """
    Decode raw coverage JSON text.

    Raises:
        CoverageValidationError: when the text is not valid JSON
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)
    except (UnicodeDecodeError, ValueError) as exc:
        raise CoverageValidationError(
            "Invalid coverage JSON",
            issues=[CoverageIssue("", "invalid_json", str(exc)).to_dict()],
        ) from exc


__all__ = [
    "CoverageShape",
    "CoverageIssue",
    "CoverageInput",
    "parse_coverage_input",
    "normalize_coverage_input",
    "decode_coverage_json",
]
