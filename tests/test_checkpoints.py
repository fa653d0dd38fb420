"""
GATEFLOW — Checkpoint Store Tests
=================================
Validates:
- Create/restore round trip reproduces live state
- Versions increase and live state carries the snapshot's version
- Automatic snapshots are evicted oldest first
- Snapshots are independent of later live mutations
- Memory Bank entries survive a restore
- Invalid snapshots are rejected with CheckpointError
- Payload round trip through the JSON form
"""

from __future__ import annotations

import copy
import dataclasses

import pytest

from gateflow.core.exceptions import CheckpointError
from gateflow.orchestrator.checkpoints import Checkpoint, CheckpointStore, validate_state
from gateflow.orchestrator.graph_builder import GraphBuilder
from gateflow.orchestrator.models import EXECUTION_HISTORY, NodeResult, TaskGraph
from gateflow.orchestrator.quality import QualityReport
from gateflow.orchestrator.state_machine import GraphStatus, NodeStatus


# ── Helpers ──────────────────────────────────────────────────────────────


@pytest.fixture
def graph(settings, chain_tasks) -> TaskGraph:
    graph, _ = GraphBuilder(settings).build("p1", chain_tasks)
    return graph


@pytest.fixture
def store(graph) -> CheckpointStore:
    return CheckpointStore(graph, retention=3)


def _finish(graph: TaskGraph, node_id: str) -> None:
    st = graph.node_states[node_id]
    st.status = NodeStatus.COMPLETED
    st.quality_score = 0.9
    st.start_time = 10.0
    st.end_time = 11.0
    st.last_result = NodeResult(
        node_id=node_id, success=True, report=QualityReport(score=0.9, explicit_score=True)
    )
    graph.state.completed_nodes.add(node_id)


# ── Tests ────────────────────────────────────────────────────────────────


class TestCreateRestore:
    """Round trip and isolation."""

    def test_round_trip_restores_live_state(self, graph, store):
        graph.state.status = GraphStatus.EXECUTING
        _finish(graph, "A")
        store.create("x")
        expected_state = copy.deepcopy(graph.state)
        expected_nodes = copy.deepcopy(graph.node_states)

        _finish(graph, "A__code_review")
        graph.state.error_count = 4
        store.restore("x")

        assert graph.state == expected_state
        assert graph.node_states == expected_nodes

    def test_version_is_monotonic(self, graph, store):
        first = store.create("a")
        second = store.create("b")

        assert second.version == first.version + 1
        assert graph.state.version == second.version
        assert second.graph_state.version == second.version

    def test_snapshot_is_isolated_from_live_state(self, graph, store):
        checkpoint = store.create("x")
        _finish(graph, "A")

        assert checkpoint.node_states["A"].status == NodeStatus.PENDING
        assert "A" not in checkpoint.graph_state.completed_nodes

    def test_restore_missing_raises(self, store):
        with pytest.raises(CheckpointError, match="does not exist"):
            store.restore("nope")

    def test_memory_survives_restore(self, graph, store):
        store.create("x")
        graph.memory.append(EXECUTION_HISTORY, {"node_id": "A", "success": True})

        store.restore("x")
        assert graph.memory.entries(EXECUTION_HISTORY) == [{"node_id": "A", "success": True}]

    def test_edge_iterations_restored(self, graph, store):
        edge = graph.edges[0]
        edge.is_cyclical = True
        store.create("x")
        edge.current_iteration = 4

        store.restore("x")
        assert edge.current_iteration == 0


class TestRetention:
    """Bounded ring of automatic snapshots."""

    def test_oldest_auto_snapshot_evicted(self, store):
        for i in range(5):
            store.create(f"auto_{i}", auto=True)

        names = [c.name for c in store.list_checkpoints()]
        assert names == ["auto_2", "auto_3", "auto_4"]
        assert store.latest_auto().name == "auto_4"

    def test_named_checkpoints_are_not_evicted(self, store):
        store.create("initialized")
        for i in range(5):
            store.create(f"auto_{i}", auto=True)

        assert store.get("initialized") is not None
        assert store.get("auto_0") is None


class TestValidation:
    """Structural checks on snapshots."""

    def test_valid_snapshot(self, graph, store):
        checkpoint = store.create("x")
        assert store.validate(checkpoint).valid

    def test_completed_set_must_match_statuses(self, graph, store):
        checkpoint = store.create("x")
        checkpoint.graph_state.completed_nodes.add("A")

        report = store.validate(checkpoint)
        assert report.valid is False
        assert any("completed node 'A'" in e for e in report.errors)

    def test_invalid_snapshot_cannot_be_restored(self, graph, store):
        checkpoint = store.create("x")
        checkpoint.graph_state.current_nodes.add("A")

        with pytest.raises(CheckpointError, match="failed validation"):
            store.restore("x")

    def test_missing_parts_reported(self):
        report = validate_state(None, None, None, {"A"})
        assert report.valid is False
        assert len(report.errors) == 3

    def test_unknown_node_reported(self, graph, store):
        checkpoint = store.create("x")
        broken = dataclasses.replace(
            checkpoint, node_states={**checkpoint.node_states, "ghost": checkpoint.node_states["A"]}
        )
        assert not store.validate(broken).valid


class TestPayload:
    """JSON form handed to persistence."""

    def test_payload_round_trip(self, graph, store):
        _finish(graph, "A")
        graph.memory.append(EXECUTION_HISTORY, {"node_id": "A"})
        checkpoint = store.create("x")

        payload = checkpoint.to_payload()
        restored = Checkpoint.from_payload(payload)

        assert isinstance(payload["graph_state"]["completed_nodes"], list)
        assert restored.graph_state == checkpoint.graph_state
        assert restored.node_states == checkpoint.node_states
        assert restored.memory == checkpoint.memory
        assert restored.version == checkpoint.version

    def test_loaded_checkpoint_can_be_added_and_restored(self, graph, store):
        checkpoint = store.create("x")
        fresh = CheckpointStore(graph)
        fresh.add(Checkpoint.from_payload(checkpoint.to_payload()))

        _finish(graph, "A")
        fresh.restore("x")
        assert graph.node_states["A"].status == NodeStatus.PENDING
