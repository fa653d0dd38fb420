"""
GATEFLOW — Recovery Manager Tests
=================================
Validates:
- execution_start is tried first
- Rollback resets nodes started after the last completion
- Latest automatic snapshot and initialized are later fallbacks
- Running nodes are returned to pending
- RecoveryExhausted when nothing yields a valid state
"""

from __future__ import annotations

import pytest

from gateflow.core.exceptions import RecoveryExhausted
from gateflow.orchestrator.checkpoints import EXECUTION_START, INITIALIZED, CheckpointStore
from gateflow.orchestrator.graph_builder import GraphBuilder
from gateflow.orchestrator.models import TaskGraph
from gateflow.orchestrator.recovery import RecoveryManager, RecoveryStrategy
from gateflow.orchestrator.state_machine import GraphStatus, NodeStatus


# ── Helpers ──────────────────────────────────────────────────────────────


@pytest.fixture
def graph(settings, chain_tasks) -> TaskGraph:
    graph, _ = GraphBuilder(settings).build("p1", chain_tasks)
    return graph


@pytest.fixture
def store(graph) -> CheckpointStore:
    return CheckpointStore(graph)


def _set(graph: TaskGraph, node_id: str, status: NodeStatus, start: float, end: float | None = None):
    st = graph.node_states[node_id]
    st.status = status
    st.start_time = start
    st.end_time = end
    if status == NodeStatus.COMPLETED:
        graph.state.completed_nodes.add(node_id)
    elif status == NodeStatus.RUNNING:
        graph.state.current_nodes.add(node_id)
    elif status == NodeStatus.FAILED:
        graph.state.failed_nodes.add(node_id)


# ── Tests ────────────────────────────────────────────────────────────────


class TestStrategyOrder:
    """Strategies are attempted in order."""

    def test_execution_start_restored_first(self, graph, store):
        store.create(INITIALIZED)
        graph.state.status = GraphStatus.EXECUTING
        store.create(EXECUTION_START)
        _set(graph, "A", NodeStatus.COMPLETED, 1.0, 2.0)

        outcome = RecoveryManager(graph, store).recover("boom")

        assert outcome.strategy == RecoveryStrategy.EXECUTION_START
        assert graph.node_states["A"].status == NodeStatus.PENDING
        assert graph.state.status == GraphStatus.EXECUTING

    def test_rollback_when_execution_start_missing(self, graph, store):
        _set(graph, "A", NodeStatus.COMPLETED, 1.0, 2.0)
        _set(graph, "A__code_review", NodeStatus.FAILED, 3.0)
        graph.node_states["A__code_review"].error_history.append("bad")

        outcome = RecoveryManager(graph, store).recover("boom")

        assert outcome.strategy == RecoveryStrategy.ROLLBACK
        assert outcome.reset_nodes == ("A__code_review",)
        assert outcome.attempted[0].startswith("execution_start")
        review = graph.node_states["A__code_review"]
        assert review.status == NodeStatus.PENDING
        assert review.error_history == []
        assert graph.node_states["A"].status == NodeStatus.COMPLETED

    def test_running_nodes_return_to_pending(self, graph, store):
        _set(graph, "A", NodeStatus.COMPLETED, 1.0, 2.0)
        _set(graph, "A__code_review", NodeStatus.RUNNING, 1.5)

        outcome = RecoveryManager(graph, store).recover("boom")

        assert "A__code_review" in outcome.reset_nodes
        assert graph.node_states["A__code_review"].status == NodeStatus.PENDING
        assert graph.state.current_nodes == set()

    def test_initialized_is_last_resort(self, graph, store):
        store.create(INITIALIZED)
        # Corrupt live state in a way rollback cannot repair
        graph.state.completed_nodes.add("B")

        outcome = RecoveryManager(graph, store).recover("boom")

        assert outcome.strategy == RecoveryStrategy.INITIALIZED
        assert graph.state.completed_nodes == set()
        assert len(outcome.attempted) == 3

    def test_exhausted_when_nothing_works(self, graph, store):
        graph.state.completed_nodes.add("B")

        with pytest.raises(RecoveryExhausted, match="All recovery strategies failed"):
            RecoveryManager(graph, store).recover("boom")
