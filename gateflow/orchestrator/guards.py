"""
GATEFLOW — Invariant Guards
===========================
Checks the run loop applies after every state change.

Enforces:
- ``|currentNodes| ≤ maxParallelism``
- a node id is in at most one of current/completed/failed
- retries bounded by a node's ``max_retries``
- the run loop's hard iteration ceiling
"""

from __future__ import annotations

from gateflow.core.exceptions import SchedulingError
from gateflow.orchestrator.models import GraphState


# ── Exceptions ──────────────────────────────────────────────────────────


class InvariantViolationError(Exception):
    """Raised when live graph state breaks a structural invariant."""

    def __init__(self, invariant: str, detail: str) -> None:
        self.invariant = invariant
        self.detail = detail
        super().__init__(f"Invariant '{invariant}' violated: {detail}")


class RetryLimitExceededError(Exception):
    """Raised when a node has used up its retries."""

    def __init__(self, node_id: str, retry_count: int, limit: int) -> None:
        self.node_id = node_id
        self.retry_count = retry_count
        self.limit = limit
        super().__init__(
            f"Retry limit exceeded for '{node_id}': {retry_count}/{limit} attempts."
        )


# ── Guards ──────────────────────────────────────────────────────────────


class Guards:
    """Stateless invariant checks."""

    @staticmethod
    def check_parallelism(state: GraphState) -> bool:
        if len(state.current_nodes) > state.max_parallelism:
            raise InvariantViolationError(
                "parallelism",
                f"{len(state.current_nodes)} running, limit {state.max_parallelism}",
            )
        return True

    @staticmethod
    def check_disjoint(state: GraphState) -> bool:
        overlap = (
            (state.current_nodes & state.completed_nodes)
            | (state.current_nodes & state.failed_nodes)
            | (state.completed_nodes & state.failed_nodes)
        )
        if overlap:
            raise InvariantViolationError(
                "disjoint_sets", f"ids in more than one set: {sorted(overlap)}"
            )
        return True

    @staticmethod
    def check_retry_limit(node_id: str, retry_count: int, limit: int) -> bool:
        """
        Raises ``RetryLimitExceededError`` once ``retry_count`` reaches
        ``limit``.
        """
        if retry_count >= limit:
            raise RetryLimitExceededError(node_id, retry_count, limit)
        return True

    @staticmethod
    def check_iteration_ceiling(
        iteration: int, ceiling: int, project_id: str | None = None
    ) -> bool:
        if iteration > ceiling:
            raise SchedulingError(
                f"Run loop exceeded its iteration ceiling ({ceiling}).",
                project_id=project_id,
            )
        return True

    @classmethod
    def check_all(cls, state: GraphState) -> None:
        """Raise the first structural violation found."""
        cls.check_parallelism(state)
        cls.check_disjoint(state)
