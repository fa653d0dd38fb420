"""
GATEFLOW — Quality Verification
===============================
Turns an executor's free-text output into a ``QualityReport``.

The executor itself only reports pass/fail plus text. Everything the
scheduler needs for quality gates and failure classification (score, build
and runtime failures, security findings, test and coverage signals) is read
from that text by a ``QualityVerifier``. ``SignalQualityVerifier`` is the
default; deployments with a richer verifier implement the same protocol.

Usage:
    verifier = SignalQualityVerifier(default_success_score=0.8)
    report = verifier.verify(success=True, output="QUALITY_SCORE: 0.92")
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True, slots=True)
class QualityReport:
    """Verification outcome for one node execution."""

    score: float
    # False when the score was inferred from pass/fail alone
    explicit_score: bool = False
    issues: tuple[str, ...] = ()
    critical_findings: tuple[str, ...] = ()
    build_failed: bool = False
    runtime_failed: bool = False
    tests_passed: bool | None = None
    test_failures: int = 0
    coverage: float | None = None

    @property
    def outstanding_issues(self) -> int:
        return len(self.issues) + len(self.critical_findings)


class QualityVerifier(Protocol):
    """Anything that can grade an executor outcome."""

    def verify(self, *, success: bool, output: str) -> QualityReport: ...


# ── Signal patterns ─────────────────────────────────────────────────────

_SCORE_RE = re.compile(
    r"^\s*(?:QUALITY[_ ]SCORE|SCORE)\s*[:=]\s*([01](?:\.\d+)?)\s*$",
    re.IGNORECASE | re.MULTILINE,
)
_ISSUE_RE = re.compile(r"^\s*ISSUE\s*:\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE)
_CRITICAL_RE = re.compile(
    r"^\s*(?:CRITICAL|SECURITY)\s*:\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE
)
_BUILD_FAILED_RE = re.compile(
    r"build failed|compilation failed|build command failed", re.IGNORECASE
)
_RUNTIME_FAILED_RE = re.compile(
    r"runtime verification failed|application cannot start", re.IGNORECASE
)
_TESTS_FAILED_RE = re.compile(r"(\d+)\s+(?:tests?\s+)?failed", re.IGNORECASE)
_TESTS_PASSED_RE = re.compile(
    r"all tests passed|tests passed|(\d+)\s+passed", re.IGNORECASE
)
_COVERAGE_RE = re.compile(r"coverage\s*[:=]?\s*(\d{1,3}(?:\.\d+)?)\s*%", re.IGNORECASE)


@dataclass
class SignalQualityVerifier:
    """
    Regex-driven verifier over the executor's output text.

    An explicit ``QUALITY_SCORE:`` line wins. Otherwise a successful outcome
    scores ``default_success_score`` and a failed one scores 0.0. Build and
    runtime failures cap the score at 0.0 regardless of what was stated.
    """

    default_success_score: float = 0.8
    failure_score: float = 0.0

    def verify(self, *, success: bool, output: str) -> QualityReport:
        text = output or ""
        build_failed = bool(_BUILD_FAILED_RE.search(text))
        runtime_failed = bool(_RUNTIME_FAILED_RE.search(text))

        explicit = _SCORE_RE.findall(text)
        if explicit:
            score = float(explicit[-1])
        elif success:
            score = self.default_success_score
        else:
            score = self.failure_score
        if build_failed or runtime_failed:
            score = 0.0
        score = max(0.0, min(1.0, score))

        test_failures = sum(int(n) for n in _TESTS_FAILED_RE.findall(text))
        tests_passed: bool | None
        if test_failures:
            tests_passed = False
        elif _TESTS_PASSED_RE.search(text):
            tests_passed = True
        else:
            tests_passed = None

        coverage_matches = _COVERAGE_RE.findall(text)
        coverage = float(coverage_matches[-1]) if coverage_matches else None

        return QualityReport(
            score=score,
            explicit_score=bool(explicit),
            issues=tuple(_ISSUE_RE.findall(text)),
            critical_findings=tuple(_CRITICAL_RE.findall(text)),
            build_failed=build_failed,
            runtime_failed=runtime_failed,
            tests_passed=tests_passed,
            test_failures=test_failures,
            coverage=coverage,
        )
