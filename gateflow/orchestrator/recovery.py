"""
GATEFLOW — Checkpoint-Based Recovery
====================================
Ordered recovery strategies for an unrecoverable scheduler error.

Strategies, tried in order until one yields a valid state:
1. Restore the ``execution_start`` checkpoint
2. Roll back every node started after the most recent completed node's end
3. Restore the newest automatic snapshot
4. Restore the ``initialized`` checkpoint

In-flight executor calls must already be cancelled; nodes left ``running``
by a strategy are returned to ``pending`` before the state is validated.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from gateflow.core.exceptions import CheckpointError, RecoveryExhausted
from gateflow.core.logging import get_logger
from gateflow.orchestrator.checkpoints import (
    EXECUTION_START,
    INITIALIZED,
    CheckpointStore,
    validate_state,
)
from gateflow.orchestrator.models import TaskGraph
from gateflow.orchestrator.state_machine import NodeStatus

logger = get_logger(__name__)


class RecoveryStrategy(StrEnum):
    EXECUTION_START = "execution_start"
    ROLLBACK = "rollback"
    LATEST_AUTO = "latest_auto"
    INITIALIZED = "initialized"


RECOVERY_ORDER: tuple[RecoveryStrategy, ...] = (
    RecoveryStrategy.EXECUTION_START,
    RecoveryStrategy.ROLLBACK,
    RecoveryStrategy.LATEST_AUTO,
    RecoveryStrategy.INITIALIZED,
)


@dataclass(frozen=True, slots=True)
class RecoveryOutcome:
    strategy: RecoveryStrategy
    reset_nodes: tuple[str, ...] = ()
    attempted: tuple[str, ...] = ()


class RecoveryManager:
    """Applies ``RECOVERY_ORDER`` to one project graph."""

    def __init__(self, graph: TaskGraph, checkpoints: CheckpointStore) -> None:
        self._graph = graph
        self._checkpoints = checkpoints

    def recover(self, reason: str) -> RecoveryOutcome:
        """
        Return the first strategy that produced a valid state.

        Raises ``RecoveryExhausted`` when every strategy failed; the caller
        is responsible for failing the graph.
        """
        attempted: list[str] = []
        for strategy in RECOVERY_ORDER:
            logger.info(
                "recovery.attempt",
                project_id=self._graph.project_id,
                strategy=strategy.value,
                reason=reason,
            )
            try:
                reset = self._apply(strategy)
                reset += self._normalise_in_flight()
                self._check_live_state()
            except CheckpointError as exc:
                attempted.append(f"{strategy.value}: {exc}")
                logger.warning(
                    "recovery.strategy_failed",
                    project_id=self._graph.project_id,
                    strategy=strategy.value,
                    error=str(exc),
                )
                continue
            logger.info(
                "recovery.succeeded",
                project_id=self._graph.project_id,
                strategy=strategy.value,
                reset_nodes=len(reset),
            )
            return RecoveryOutcome(strategy, tuple(reset), tuple(attempted))

        raise RecoveryExhausted(
            "All recovery strategies failed: " + " | ".join(attempted),
            project_id=self._graph.project_id,
        )

    # ── Strategies ──────────────────────────────────────────────────────

    def _apply(self, strategy: RecoveryStrategy) -> list[str]:
        if strategy == RecoveryStrategy.EXECUTION_START:
            self._checkpoints.restore(EXECUTION_START)
            return []
        if strategy == RecoveryStrategy.ROLLBACK:
            return self.rollback_after_last_completion()
        if strategy == RecoveryStrategy.LATEST_AUTO:
            latest = self._checkpoints.latest_auto()
            if latest is None:
                raise CheckpointError(
                    "No automatic snapshot available.",
                    project_id=self._graph.project_id,
                )
            self._checkpoints.restore_checkpoint(latest)
            return []
        if strategy == RecoveryStrategy.INITIALIZED:
            self._checkpoints.restore(INITIALIZED)
            return []
        raise ValueError(f"Unknown recovery strategy '{strategy}'.")

    def rollback_after_last_completion(self) -> list[str]:
        """
        Reset to ``pending`` every node whose start time is after the most
        recent completed node's end time, clearing its error history.
        """
        graph = self._graph
        end_times = [
            st.end_time
            for st in graph.node_states.values()
            if st.status == NodeStatus.COMPLETED and st.end_time is not None
        ]
        cutoff = max(end_times) if end_times else None
        reset: list[str] = []
        for node_id, st in graph.node_states.items():
            if st.start_time is None or st.status == NodeStatus.COMPLETED:
                continue
            if cutoff is not None and st.start_time <= cutoff:
                continue
            st.status = NodeStatus.PENDING
            st.start_time = None
            st.end_time = None
            st.duration_ms = None
            st.assigned_worker_id = None
            st.error_history.clear()
            st.not_before = None
            st.warning = None
            graph.state.current_nodes.discard(node_id)
            graph.state.failed_nodes.discard(node_id)
            reset.append(node_id)
        return reset

    # ── Helpers ─────────────────────────────────────────────────────────

    def _normalise_in_flight(self) -> list[str]:
        graph = self._graph
        reset: list[str] = []
        for node_id, st in graph.node_states.items():
            if st.status == NodeStatus.RUNNING:
                st.status = NodeStatus.PENDING
                st.assigned_worker_id = None
                reset.append(node_id)
        graph.state.current_nodes.clear()
        graph.state.available_nodes = []
        return reset

    def _check_live_state(self) -> None:
        graph = self._graph
        report = validate_state(
            graph.state, graph.node_states, graph.memory, set(graph.nodes)
        )
        if not report.valid:
            raise CheckpointError(
                "Recovered state is inconsistent: " + "; ".join(report.errors),
                project_id=graph.project_id,
            )
