"""
GATEFLOW — Checkpoint Store
===========================
Named, versioned, in-process snapshots of a project's execution state.

A checkpoint deep-copies the GraphState, the per-node state map, the
Memory Bank and the cyclical edge counters. Named checkpoints
(``initialized``, ``execution_start``, manual names) are kept until
overwritten; automatic snapshots live in a bounded ring and the oldest is
evicted first.

Usage:
    store = CheckpointStore(graph, retention=10)
    store.create("initialized")
    store.restore("initialized")
"""

from __future__ import annotations

import copy
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from pydantic import TypeAdapter

from gateflow.core.exceptions import CheckpointError
from gateflow.core.logging import get_logger
from gateflow.orchestrator.models import GraphState, MemoryBank, NodeState, TaskGraph
from gateflow.orchestrator.state_machine import NodeStatus

logger = get_logger(__name__)

INITIALIZED = "initialized"
EXECUTION_START = "execution_start"


# ── Records ─────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Immutable snapshot of execution state at a point in time."""

    name: str
    project_id: str
    version: int
    created_at: float
    graph_state: GraphState
    node_states: dict[str, NodeState]
    memory: MemoryBank
    edge_iterations: dict[str, int] = field(default_factory=dict)
    auto: bool = False

    def to_payload(self) -> dict[str, Any]:
        """JSON-compatible form handed to the persistence store."""
        return _CHECKPOINT_ADAPTER.dump_python(self, mode="json")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Checkpoint:
        return _CHECKPOINT_ADAPTER.validate_python(payload)


_CHECKPOINT_ADAPTER: TypeAdapter[Checkpoint] = TypeAdapter(Checkpoint)


@dataclass(frozen=True, slots=True)
class ValidationReport:
    valid: bool
    errors: tuple[str, ...] = ()


# ── Validation ──────────────────────────────────────────────────────────


def validate_state(
    graph_state: GraphState | None,
    node_states: dict[str, NodeState] | None,
    memory: MemoryBank | None,
    node_ids: set[str],
) -> ValidationReport:
    """
    Structural check shared by snapshot validation and live-state checks
    after recovery.
    """
    errors: list[str] = []
    if graph_state is None:
        errors.append("graph_state missing")
    if node_states is None:
        errors.append("node_states missing")
    if memory is None:
        errors.append("memory missing")
    if errors:
        return ValidationReport(False, tuple(errors))

    unknown = set(node_states) - node_ids
    if unknown:
        errors.append(f"node states for unknown nodes: {sorted(unknown)}")
    missing = node_ids - set(node_states)
    if missing:
        errors.append(f"nodes without state: {sorted(missing)}")
    for node_id in sorted(graph_state.current_nodes):
        state = node_states.get(node_id)
        if state is None or state.status != NodeStatus.RUNNING:
            errors.append(f"current node '{node_id}' is not running")
    for node_id in sorted(graph_state.completed_nodes):
        state = node_states.get(node_id)
        if state is None or state.status != NodeStatus.COMPLETED:
            errors.append(f"completed node '{node_id}' is not completed")
    for node_id in sorted(graph_state.failed_nodes):
        state = node_states.get(node_id)
        if state is None or state.status not in (NodeStatus.FAILED, NodeStatus.BLOCKED):
            errors.append(f"failed node '{node_id}' is neither failed nor blocked")
    if len(graph_state.current_nodes) > graph_state.max_parallelism:
        errors.append("current nodes exceed max parallelism")
    overlap = (
        (graph_state.current_nodes & graph_state.completed_nodes)
        | (graph_state.current_nodes & graph_state.failed_nodes)
        | (graph_state.completed_nodes & graph_state.failed_nodes)
    )
    if overlap:
        errors.append(f"nodes in more than one id set: {sorted(overlap)}")
    return ValidationReport(not errors, tuple(errors))


# ── Store ───────────────────────────────────────────────────────────────


class CheckpointStore:
    """In-process checkpoint store for one project graph."""

    def __init__(self, graph: TaskGraph, retention: int = 10) -> None:
        self._graph = graph
        self._named: dict[str, Checkpoint] = {}
        self._auto: deque[Checkpoint] = deque(maxlen=retention)
        self._version = graph.state.version

    @property
    def retention(self) -> int:
        return self._auto.maxlen or 0

    def capture(self, name: str, *, version: int | None = None, auto: bool = False) -> Checkpoint:
        """Deep-copy live state into a checkpoint without storing it."""
        graph = self._graph
        return Checkpoint(
            name=name,
            project_id=graph.project_id,
            version=graph.state.version if version is None else version,
            created_at=time.time(),
            graph_state=copy.deepcopy(graph.state),
            node_states=copy.deepcopy(graph.node_states),
            memory=copy.deepcopy(graph.memory),
            edge_iterations={e.id: e.current_iteration for e in graph.edges if e.is_cyclical},
            auto=auto,
        )

    def create(self, name: str, *, auto: bool = False) -> Checkpoint:
        """
        Snapshot live state under ``name``.

        The version counter is bumped and written to the live GraphState
        before copying, so the snapshot and live state agree on it.
        """
        self._version = max(self._version, self._graph.state.version) + 1
        self._graph.state.version = self._version
        checkpoint = self.capture(name, version=self._version, auto=auto)
        if auto:
            if len(self._auto) == self._auto.maxlen:
                logger.debug("checkpoint.evicted", name=self._auto[0].name)
            self._auto.append(checkpoint)
        else:
            self._named[name] = checkpoint
        logger.info(
            "checkpoint.created",
            project_id=self._graph.project_id,
            name=name,
            version=checkpoint.version,
            auto=auto,
        )
        return checkpoint

    def get(self, name: str) -> Checkpoint | None:
        if name in self._named:
            return self._named[name]
        for checkpoint in reversed(self._auto):
            if checkpoint.name == name:
                return checkpoint
        return None

    def latest_auto(self) -> Checkpoint | None:
        return self._auto[-1] if self._auto else None

    def list_checkpoints(self) -> list[Checkpoint]:
        return sorted([*self._named.values(), *self._auto], key=lambda c: c.version)

    def add(self, checkpoint: Checkpoint) -> None:
        """Register a checkpoint loaded from persistence."""
        if checkpoint.auto:
            self._auto.append(checkpoint)
        else:
            self._named[checkpoint.name] = checkpoint
        self._version = max(self._version, checkpoint.version)

    def validate(self, checkpoint: Checkpoint) -> ValidationReport:
        report = validate_state(
            checkpoint.graph_state,
            checkpoint.node_states,
            checkpoint.memory,
            set(self._graph.nodes),
        )
        if checkpoint.version < 1:
            report = ValidationReport(False, (*report.errors, "version missing"))
        return report

    def restore(self, name: str) -> Checkpoint:
        """
        Restore the checkpoint called ``name`` into live state.

        Raises ``CheckpointError`` if it does not exist or fails validation.
        """
        checkpoint = self.get(name)
        if checkpoint is None:
            raise CheckpointError(
                f"Checkpoint '{name}' does not exist.",
                project_id=self._graph.project_id,
            )
        self.restore_checkpoint(checkpoint)
        return checkpoint

    def restore_checkpoint(self, checkpoint: Checkpoint) -> None:
        report = self.validate(checkpoint)
        if not report.valid:
            raise CheckpointError(
                f"Checkpoint '{checkpoint.name}' failed validation: "
                + "; ".join(report.errors),
                project_id=self._graph.project_id,
            )
        graph = self._graph
        memory = copy.deepcopy(checkpoint.memory)
        # The Memory Bank is append-only and outlives restores
        memory.absorb(graph.memory)

        graph.state = copy.deepcopy(checkpoint.graph_state)
        graph.node_states = copy.deepcopy(checkpoint.node_states)
        graph.memory = memory
        for edge in graph.edges:
            if edge.id in checkpoint.edge_iterations:
                edge.current_iteration = checkpoint.edge_iterations[edge.id]
        graph.state.version = checkpoint.version
        logger.info(
            "checkpoint.restored",
            project_id=graph.project_id,
            name=checkpoint.name,
            version=checkpoint.version,
        )
