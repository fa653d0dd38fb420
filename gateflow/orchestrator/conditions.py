"""
GATEFLOW — Conditional Edge Evaluator
=====================================
Decides whether a dependency edge may be traversed.

Every condition is a pure function of (graph state, condition parameters,
most recent result of the edge's source node). An edge passes only if all
of its conditions pass. A cyclical edge is first checked against its
iteration bound and then gets one extra condition chosen by its cycle
purpose. Recording a passing traversal of a cyclical edge is the only
mutation this module performs.

Usage:
    evaluator = ConditionalEdgeEvaluator()
    ctx = EvaluationContext(graph=graph, quality_threshold=0.7)
    result = evaluator.evaluate(edge, ctx)
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from gateflow.core.logging import get_logger
from gateflow.orchestrator.models import (
    Condition,
    ConditionKind,
    CyclePurpose,
    Edge,
    TaskGraph,
    TaskNode,
)
from gateflow.orchestrator.state_machine import NodeStatus

logger = get_logger(__name__)

MAX_ITERATIONS_REASON = "max_iterations"

PURPOSE_CONDITIONS: dict[CyclePurpose, ConditionKind] = {
    CyclePurpose.QUALITY_ITERATION: ConditionKind.QUALITY_IMPROVEMENT,
    CyclePurpose.REVIEW_CYCLE: ConditionKind.REVIEW_FEEDBACK,
    CyclePurpose.TEST_FIX_CYCLE: ConditionKind.TEST_CONVERGENCE,
    CyclePurpose.GENERAL: ConditionKind.GENERAL_IMPROVEMENT,
}


# ── Result types ────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ConditionResult:
    kind: ConditionKind
    passed: bool
    reason: str


@dataclass(frozen=True, slots=True)
class EdgeEvaluation:
    edge_id: str
    passed: bool
    reason: str
    results: tuple[ConditionResult, ...] = ()


@dataclass(frozen=True)
class EvaluationContext:
    """Project-level inputs shared by every condition."""

    graph: TaskGraph
    quality_threshold: float = 0.7
    timeout_fails_quality_gate: bool = True
    general_improvement_cap: int = 3
    worker_available: Callable[[TaskNode], bool] | None = None


# ── Evaluator ───────────────────────────────────────────────────────────


class ConditionalEdgeEvaluator:
    """Stateless; safe to share between projects."""

    def evaluate(
        self, edge: Edge, ctx: EvaluationContext, *, dry_run: bool = False
    ) -> EdgeEvaluation:
        """
        Evaluate ``edge``'s conditions (logical AND).

        For a cyclical edge a passing evaluation increments its iteration
        counter and appends an audit record, unless ``dry_run`` is set.
        """
        if edge.is_cyclical and edge.current_iteration >= edge.max_iterations:
            result = ConditionResult(
                ConditionKind.GENERAL_IMPROVEMENT
                if edge.cycle_purpose is None
                else PURPOSE_CONDITIONS[edge.cycle_purpose],
                False,
                MAX_ITERATIONS_REASON,
            )
            return EdgeEvaluation(edge.id, False, MAX_ITERATIONS_REASON, (result,))

        conditions = list(edge.conditions)
        if edge.is_cyclical:
            purpose = edge.cycle_purpose or CyclePurpose.GENERAL
            conditions.append(Condition(PURPOSE_CONDITIONS[purpose]))

        results = tuple(self.check(c, edge, ctx) for c in conditions)
        failed = next((r for r in results if not r.passed), None)
        evaluation = EdgeEvaluation(
            edge_id=edge.id,
            passed=failed is None,
            reason="all_conditions_passed" if failed is None else failed.reason,
            results=results,
        )
        if evaluation.passed and edge.is_cyclical and not dry_run:
            self.record_traversal(edge, evaluation, ctx)
        return evaluation

    def record_traversal(
        self, edge: Edge, evaluation: EdgeEvaluation, ctx: EvaluationContext
    ) -> None:
        """Count one pass over a cyclical edge."""
        edge.current_iteration += 1
        source_result = ctx.graph.node_states[edge.source].last_result
        edge.evaluation_history.append(
            {
                "iteration": edge.current_iteration,
                "timestamp": time.time(),
                "passed": evaluation.passed,
                "reason": evaluation.reason,
                "source_success": None if source_result is None else source_result.success,
                "source_score": None if source_result is None else source_result.quality_score,
            }
        )
        logger.info(
            "edge.cyclical_traversal",
            edge_id=edge.id,
            iteration=edge.current_iteration,
            max_iterations=edge.max_iterations,
        )

    # ── Conditions ──────────────────────────────────────────────────────

    def check(
        self, condition: Condition, edge: Edge, ctx: EvaluationContext
    ) -> ConditionResult:
        kind = condition.kind
        if kind == ConditionKind.DEPENDENCY:
            passed, reason = _dependency(edge, ctx)
        elif kind == ConditionKind.QUALITY_GATE:
            passed, reason = _quality_gate(condition, edge, ctx)
        elif kind == ConditionKind.RETRY:
            passed, reason = _retry(condition, edge, ctx)
        elif kind == ConditionKind.AGENT_AVAILABILITY:
            passed, reason = _agent_availability(edge, ctx)
        elif kind == ConditionKind.QUALITY_IMPROVEMENT:
            passed, reason = _quality_improvement(condition, edge, ctx)
        elif kind == ConditionKind.REVIEW_FEEDBACK:
            passed, reason = _review_feedback(edge, ctx)
        elif kind == ConditionKind.TEST_CONVERGENCE:
            passed, reason = _test_convergence(edge, ctx)
        elif kind == ConditionKind.GENERAL_IMPROVEMENT:
            passed, reason = _general_improvement(condition, edge, ctx)
        else:
            raise ValueError(f"Unknown condition kind '{kind}'.")
        return ConditionResult(kind, passed, reason)


# ── Condition functions ─────────────────────────────────────────────────


def _dependency(edge: Edge, ctx: EvaluationContext) -> tuple[bool, str]:
    status = ctx.graph.node_states[edge.source].status
    if status == NodeStatus.COMPLETED:
        return True, "source_completed"
    return False, f"source_{status.value}"


def _quality_gate(
    condition: Condition, edge: Edge, ctx: EvaluationContext
) -> tuple[bool, str]:
    threshold = condition.params.get("threshold", ctx.quality_threshold)
    state = ctx.graph.node_states[edge.source]
    if state.warning is not None:
        if ctx.timeout_fails_quality_gate:
            return False, "source_completed_with_warning"
        return True, "warning_accepted"
    if state.quality_score is None:
        return False, "no_quality_score"
    if state.quality_score >= threshold:
        return True, "quality_met"
    return False, "below_quality_threshold"


def _retry(condition: Condition, edge: Edge, ctx: EvaluationContext) -> tuple[bool, str]:
    target = ctx.graph.nodes[edge.target]
    limit = condition.params.get("max_retries", target.max_retries)
    if ctx.graph.node_states[edge.target].retry_count <= limit:
        return True, "retries_available"
    return False, "retries_exhausted"


def _agent_availability(edge: Edge, ctx: EvaluationContext) -> tuple[bool, str]:
    if ctx.worker_available is None:
        return True, "availability_unchecked"
    if ctx.worker_available(ctx.graph.nodes[edge.target]):
        return True, "worker_available"
    return False, "no_capable_worker"


def _quality_improvement(
    condition: Condition, edge: Edge, ctx: EvaluationContext
) -> tuple[bool, str]:
    threshold = condition.params.get("threshold", ctx.quality_threshold)
    state = ctx.graph.node_states[edge.source]
    if state.quality_score is None:
        return False, "no_quality_score"
    if state.quality_score >= threshold:
        return True, "quality_met"
    if (
        state.previous_quality_score is not None
        and state.quality_score > state.previous_quality_score
    ):
        return True, "quality_improved"
    return False, "quality_not_improving"


def _review_feedback(edge: Edge, ctx: EvaluationContext) -> tuple[bool, str]:
    result = ctx.graph.node_states[edge.source].last_result
    if result is None:
        return False, "no_source_result"
    outstanding = result.report.outstanding_issues if result.report is not None else 0
    if outstanding == 0:
        return True, "no_outstanding_issues"
    return False, "outstanding_issues"


def _test_convergence(edge: Edge, ctx: EvaluationContext) -> tuple[bool, str]:
    state = ctx.graph.node_states[edge.source]
    result = state.last_result
    if result is None:
        return False, "no_source_result"
    report = result.report
    if report is not None and report.tests_passed:
        return True, "tests_passed"
    if (
        report is not None
        and report.coverage is not None
        and state.previous_coverage is not None
        and report.coverage > state.previous_coverage
    ):
        return True, "coverage_improved"
    if (report is None or report.tests_passed is None) and result.success:
        return True, "no_test_signal"
    return False, "tests_not_converging"


def _general_improvement(
    condition: Condition, edge: Edge, ctx: EvaluationContext
) -> tuple[bool, str]:
    cap = condition.params.get("cap", ctx.general_improvement_cap)
    result = ctx.graph.node_states[edge.source].last_result
    if result is not None and result.success:
        return True, "source_succeeded"
    if edge.current_iteration < cap:
        return True, "within_improvement_cap"
    return False, "improvement_cap_reached"
