"""
GATEFLOW — Failure Classification & Remediation Tests
=====================================================
Validates:
- Critical signals: build, security, runtime, test failures, low score
- Moderate and minor thresholds
- Bare executor failures are not score-classified
- Remediation plans order issues by category priority
- Exponential backoff with cap
"""

from __future__ import annotations

import pytest

from gateflow.orchestrator.models import NodeResult
from gateflow.orchestrator.quality import QualityReport, SignalQualityVerifier
from gateflow.orchestrator.remediation import (
    FailureSeverity,
    IssueCategory,
    RemediationAction,
    backoff_delay,
    build_remediation_plan,
    categorize_issues,
    classify_failure,
    collect_issues,
)


# ── Helpers ──────────────────────────────────────────────────────────────


def _result(output: str, success: bool = True) -> NodeResult:
    report = SignalQualityVerifier().verify(success=success, output=output)
    return NodeResult(node_id="n", success=success, output=output, report=report)


# ── Tests ────────────────────────────────────────────────────────────────


class TestClassification:
    """Severity derived from quality signals."""

    @pytest.mark.parametrize(
        "output, signal",
        [
            ("Build failed: missing module", "build_failed"),
            ("SECURITY: SQL injection in login handler", "security_critical"),
            ("Runtime verification failed", "runtime_failed"),
            ("6 tests failed", "test_failures"),
            ("QUALITY_SCORE: 0.2", "score_below_critical_cutoff"),
        ],
    )
    def test_critical_signals(self, output, signal):
        assessment = classify_failure(_result(output))

        assert assessment.severity == FailureSeverity.CRITICAL
        assert assessment.action == RemediationAction.MANUAL_INTERVENTION
        assert signal in assessment.signals

    def test_five_test_failures_are_not_critical(self):
        assessment = classify_failure(_result("5 tests failed\nQUALITY_SCORE: 0.65"))
        assert assessment.severity == FailureSeverity.MINOR

    def test_moderate(self):
        assessment = classify_failure(_result("QUALITY_SCORE: 0.5"))

        assert assessment.severity == FailureSeverity.MODERATE
        assert assessment.action == RemediationAction.GUIDED_REWORK

    def test_minor(self):
        assessment = classify_failure(_result("QUALITY_SCORE: 0.65"))

        assert assessment.severity == FailureSeverity.MINOR
        assert assessment.action == RemediationAction.AUTO_RETRY

    def test_bare_executor_failure_is_minor(self):
        assessment = classify_failure(_result("connection reset", success=False))

        assert assessment.severity == FailureSeverity.MINOR
        assert assessment.score is None

    def test_cutoffs_are_configurable(self):
        result = _result("QUALITY_SCORE: 0.5")
        assessment = classify_failure(result, critical_cutoff=0.55, moderate_cutoff=0.6)
        assert assessment.severity == FailureSeverity.CRITICAL


class TestRemediationPlan:
    """Structured plans for the next attempt."""

    def test_issues_collected_from_report(self):
        result = NodeResult(
            node_id="n",
            success=False,
            report=QualityReport(
                score=0.0,
                build_failed=True,
                issues=("unused import in views.py",),
                critical_findings=("hardcoded secret",),
            ),
            error="exit code 1",
        )
        issues = collect_issues(result)

        assert "Build failed" in issues
        assert "Security: hardcoded secret" in issues
        assert "unused import in views.py" in issues
        assert "exit code 1" in issues

    def test_categorize(self):
        grouped = categorize_issues(["Build failed", "lint: trailing whitespace", "odd naming"])

        assert grouped[IssueCategory.BUILD] == ["Build failed"]
        assert grouped[IssueCategory.LINTING] == ["lint: trailing whitespace"]
        assert grouped[IssueCategory.OTHER] == ["odd naming"]

    def test_plan_orders_by_priority(self):
        result = _result("ISSUE: fix lint warnings\nSECURITY: xss in template\nQUALITY_SCORE: 0.5")
        plan = build_remediation_plan(result, classify_failure(result), attempt=2)

        assert plan.attempt == 2
        assert plan.severity == FailureSeverity.CRITICAL
        assert plan.issues[0].category == IssueCategory.SECURITY
        assert plan.issues[-1].category == IssueCategory.LINTING
        assert plan.verification[0] == "Perform a security scan and confirm no critical findings"
        assert plan.estimated_minutes == 45 + 5

    def test_plan_serialises(self):
        result = _result("QUALITY_SCORE: 0.5\nISSUE: missing tests")
        data = build_remediation_plan(result, classify_failure(result), attempt=1).to_dict()

        assert data["severity"] == "moderate"
        assert data["action"] == "guided_rework"
        assert data["issues"][0]["category"] == "tests"


class TestBackoff:

    @pytest.mark.parametrize(
        "attempt, expected",
        [(1, 1.0), (2, 2.0), (3, 4.0), (6, 30.0), (0, 0.0)],
    )
    def test_exponential_with_cap(self, attempt, expected):
        assert backoff_delay(attempt, base=1.0, cap=30.0) == expected

    def test_zero_base_disables_backoff(self):
        assert backoff_delay(3, base=0.0, cap=30.0) == 0.0
