"""
GATEFLOW — Invariant Guard Tests
================================
Validates:
- Parallelism limit
- Disjoint current/completed/failed sets
- Retry limit
- Iteration ceiling raises the fatal SchedulingError
"""

from __future__ import annotations

import pytest

from gateflow.core.exceptions import SchedulingError
from gateflow.orchestrator.guards import (
    Guards,
    InvariantViolationError,
    RetryLimitExceededError,
)
from gateflow.orchestrator.models import GraphState


class TestStructuralGuards:

    def test_parallelism_within_limit(self):
        state = GraphState(current_nodes={"a", "b"}, max_parallelism=2)
        assert Guards.check_parallelism(state)

    def test_parallelism_exceeded(self):
        state = GraphState(current_nodes={"a", "b", "c"}, max_parallelism=2)
        with pytest.raises(InvariantViolationError, match="parallelism"):
            Guards.check_parallelism(state)

    def test_overlapping_sets(self):
        state = GraphState(current_nodes={"a"}, completed_nodes={"a"})
        with pytest.raises(InvariantViolationError, match=r"\['a'\]"):
            Guards.check_disjoint(state)

    def test_check_all_passes_clean_state(self):
        Guards.check_all(GraphState(completed_nodes={"a"}, failed_nodes={"b"}))


class TestLimits:

    def test_retry_limit(self):
        assert Guards.check_retry_limit("n", 2, 3)
        with pytest.raises(RetryLimitExceededError, match="3/3"):
            Guards.check_retry_limit("n", 3, 3)

    def test_iteration_ceiling(self):
        assert Guards.check_iteration_ceiling(10, 10)
        with pytest.raises(SchedulingError) as exc_info:
            Guards.check_iteration_ceiling(11, 10, "p1")
        assert exc_info.value.fatal is True
        assert exc_info.value.project_id == "p1"
