"""
GATEFLOW — Failure Classification & Remediation
===============================================
Classifies a negative node result and builds the structured plan that
goes back to the executor on the next attempt.

Severity:
- critical: build/compile failure, security-critical finding, runtime
  start failure, more than ``MAX_TEST_FAILURES`` failing tests, or a
  reported score below the critical cutoff
- moderate: reported score below the moderate cutoff
- minor: everything else

Required action per severity: minor → automatic retry with backoff,
moderate → guided rework, critical → manual intervention.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any

from gateflow.orchestrator.models import NodeResult


# ── Constants ───────────────────────────────────────────────────────────

MAX_TEST_FAILURES = 5


class FailureSeverity(StrEnum):
    MINOR = "minor"
    MODERATE = "moderate"
    CRITICAL = "critical"


class RemediationAction(StrEnum):
    AUTO_RETRY = "auto_retry"
    GUIDED_REWORK = "guided_rework"
    MANUAL_INTERVENTION = "manual_intervention"


REQUIRED_ACTIONS: dict[FailureSeverity, RemediationAction] = {
    FailureSeverity.MINOR: RemediationAction.AUTO_RETRY,
    FailureSeverity.MODERATE: RemediationAction.GUIDED_REWORK,
    FailureSeverity.CRITICAL: RemediationAction.MANUAL_INTERVENTION,
}


class IssueCategory(StrEnum):
    SECURITY = "security"
    BUILD = "build"
    RUNTIME = "runtime"
    TESTS = "tests"
    LINTING = "linting"
    OTHER = "other"


_CATEGORY_PATTERNS: dict[IssueCategory, re.Pattern[str]] = {
    IssueCategory.SECURITY: re.compile(
        r"secur|vulnerab|injection|xss|csrf|secret|credential", re.IGNORECASE
    ),
    IssueCategory.BUILD: re.compile(r"build|compil|syntax|import error|module not found", re.IGNORECASE),
    IssueCategory.RUNTIME: re.compile(r"runtime|cannot start|crash|exception|timeout", re.IGNORECASE),
    IssueCategory.TESTS: re.compile(r"test|assert|coverage", re.IGNORECASE),
    IssueCategory.LINTING: re.compile(r"lint|format|style|unused|pep ?8", re.IGNORECASE),
}

_CATEGORY_PRIORITY: dict[IssueCategory, int] = {
    IssueCategory.SECURITY: 0,
    IssueCategory.BUILD: 0,
    IssueCategory.RUNTIME: 1,
    IssueCategory.TESTS: 1,
    IssueCategory.OTHER: 2,
    IssueCategory.LINTING: 3,
}

_CATEGORY_STEPS: dict[IssueCategory, tuple[str, ...]] = {
    IssueCategory.SECURITY: (
        "Remove or neutralise the flagged vulnerable code paths",
        "Validate and sanitise every external input touched by the change",
    ),
    IssueCategory.BUILD: (
        "Read the first build error and fix it before anything else",
        "Check imports, dependency declarations and syntax in changed files",
    ),
    IssueCategory.RUNTIME: (
        "Start the application locally and capture the startup error",
        "Fix configuration or initialisation order that prevents startup",
    ),
    IssueCategory.TESTS: (
        "Run the failing tests in isolation and fix the code, not the assertions",
        "Add tests for any behaviour the change introduced without coverage",
    ),
    IssueCategory.LINTING: ("Apply the project's formatter and linter fixes",),
    IssueCategory.OTHER: ("Address each listed issue and explain the fix in the output",),
}

_VERIFICATION_STEPS: dict[IssueCategory, str] = {
    IssueCategory.BUILD: "Run the build and confirm it succeeds",
    IssueCategory.TESTS: "Execute the full test suite and confirm it passes",
    IssueCategory.LINTING: "Run linting and confirm it is clean",
    IssueCategory.SECURITY: "Perform a security scan and confirm no critical findings",
    IssueCategory.RUNTIME: "Start the application and confirm it runs",
    IssueCategory.OTHER: "Re-run the quality checks and report the resulting score",
}

_CATEGORY_MINUTES: dict[IssueCategory, int] = {
    IssueCategory.SECURITY: 45,
    IssueCategory.BUILD: 30,
    IssueCategory.RUNTIME: 30,
    IssueCategory.TESTS: 20,
    IssueCategory.LINTING: 5,
    IssueCategory.OTHER: 15,
}


# ── Records ─────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class FailureAssessment:
    severity: FailureSeverity
    action: RemediationAction
    signals: tuple[str, ...] = ()
    score: float | None = None


@dataclass(frozen=True, slots=True)
class PrioritizedIssue:
    description: str
    category: IssueCategory
    priority: int


@dataclass(frozen=True, slots=True)
class RemediationPlan:
    node_id: str
    severity: FailureSeverity
    action: RemediationAction
    attempt: int
    issues: tuple[PrioritizedIssue, ...]
    steps: tuple[str, ...]
    verification: tuple[str, ...]
    estimated_minutes: int

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        data["action"] = self.action.value
        data["issues"] = [
            {**issue, "category": issue["category"].value} for issue in data["issues"]
        ]
        return data


# ── Classification ──────────────────────────────────────────────────────


def classify_failure(
    result: NodeResult,
    *,
    critical_cutoff: float = 0.3,
    moderate_cutoff: float = 0.6,
) -> FailureAssessment:
    """
    Derive severity from the result's quality signals.

    A score only counts when it was reported by the verifier or the
    execution succeeded; a bare executor failure is not scored.
    """
    report = result.report
    score: float | None = None
    signals: list[str] = []
    if report is not None:
        if report.explicit_score or result.success:
            score = report.score
        if report.build_failed:
            signals.append("build_failed")
        if report.critical_findings:
            signals.append("security_critical")
        if report.runtime_failed:
            signals.append("runtime_failed")
        if report.test_failures > MAX_TEST_FAILURES:
            signals.append("test_failures")
    if score is not None and score < critical_cutoff:
        signals.append("score_below_critical_cutoff")

    if signals:
        severity = FailureSeverity.CRITICAL
    elif score is not None and score < moderate_cutoff:
        severity = FailureSeverity.MODERATE
        signals.append("score_below_moderate_cutoff")
    else:
        severity = FailureSeverity.MINOR
    return FailureAssessment(severity, REQUIRED_ACTIONS[severity], tuple(signals), score)


# ── Remediation plans ───────────────────────────────────────────────────


def collect_issues(result: NodeResult) -> list[str]:
    issues: list[str] = []
    report = result.report
    if report is not None:
        if report.build_failed:
            issues.append("Build failed")
        if report.runtime_failed:
            issues.append("Runtime verification failed: application cannot start")
        if report.test_failures:
            issues.append(f"{report.test_failures} test(s) failed")
        issues.extend(f"Security: {finding}" for finding in report.critical_findings)
        issues.extend(report.issues)
    if result.error:
        issues.append(result.error)
    if not issues and not result.success:
        issues.append("Execution reported failure without details")
    return issues


def categorize_issues(issues: list[str]) -> dict[IssueCategory, list[str]]:
    grouped: dict[IssueCategory, list[str]] = {}
    for issue in issues:
        category = next(
            (cat for cat, rx in _CATEGORY_PATTERNS.items() if rx.search(issue)),
            IssueCategory.OTHER,
        )
        grouped.setdefault(category, []).append(issue)
    return grouped


def build_remediation_plan(
    result: NodeResult, assessment: FailureAssessment, attempt: int
) -> RemediationPlan:
    grouped = categorize_issues(collect_issues(result))
    ordered = sorted(grouped, key=lambda c: _CATEGORY_PRIORITY[c])
    issues = tuple(
        PrioritizedIssue(description, category, _CATEGORY_PRIORITY[category])
        for category in ordered
        for description in grouped[category]
    )
    steps = tuple(step for category in ordered for step in _CATEGORY_STEPS[category])
    verification = tuple(_VERIFICATION_STEPS[c] for c in ordered)
    minutes = sum(_CATEGORY_MINUTES[c] * len(grouped[c]) for c in ordered)
    return RemediationPlan(
        node_id=result.node_id,
        severity=assessment.severity,
        action=assessment.action,
        attempt=attempt,
        issues=issues,
        steps=steps,
        verification=verification,
        estimated_minutes=minutes,
    )


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential delay before retry ``attempt`` (1-based)."""
    if attempt < 1 or base <= 0:
        return 0.0
    return min(cap, base * (2 ** (attempt - 1)))
