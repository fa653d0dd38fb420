"""
GATEFLOW — Graph Data Model
===========================
Task nodes, edges, conditions, aggregate graph state and the Memory Bank.

Node *definitions* (``TaskNode``) are immutable once the graph is built.
Everything the scheduler mutates lives in ``NodeState`` / ``GraphState`` /
``MemoryBank`` so that a checkpoint is a deep copy of exactly those three
plus the cyclical edge counters.

Usage:
    spec = TaskSpec.model_validate({"id": "t1", "title": "Build login form"})
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from gateflow.orchestrator.quality import QualityReport
from gateflow.orchestrator.state_machine import GraphStatus, NodeStatus


# ── Enumerations ────────────────────────────────────────────────────────


class TaskType(StrEnum):
    STANDARD = "standard"
    CODE_REVIEW = "code_review"
    QA_TESTING = "qa_testing"


class CheckpointType(StrEnum):
    CODE_REVIEW = "code_review"
    QA_TESTING = "qa_testing"
    FINAL_CODE_REVIEW = "final_code_review"
    FINAL_QA_TESTING = "final_qa_testing"


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK: dict[Priority, int] = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.HIGH: 2,
    Priority.CRITICAL: 3,
}


class EdgeType(StrEnum):
    DEPENDENCY = "dependency"
    CHECKPOINT_DEPENDENCY = "checkpoint_dependency"
    FINAL_REVIEW_DEPENDENCY = "final_review_dependency"


class ConditionKind(StrEnum):
    """Closed set of edge condition kinds."""

    DEPENDENCY = "dependency"
    QUALITY_GATE = "quality_gate"
    RETRY = "retry"
    AGENT_AVAILABILITY = "agent_availability"
    # Cyclical extensions, one per cycle purpose
    QUALITY_IMPROVEMENT = "quality_improvement"
    REVIEW_FEEDBACK = "review_feedback"
    TEST_CONVERGENCE = "test_convergence"
    GENERAL_IMPROVEMENT = "general_improvement"


class CyclePurpose(StrEnum):
    QUALITY_ITERATION = "quality_iteration"
    REVIEW_CYCLE = "review_cycle"
    TEST_FIX_CYCLE = "test_fix_cycle"
    GENERAL = "general"


# ── Input ───────────────────────────────────────────────────────────────


class TaskSpec(BaseModel):
    """One entry of the flat task list handed to the graph builder."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = ""
    skills: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("skills", "required_skills", "requiredSkills"),
    )
    dependencies: list[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    estimated_effort: float = Field(
        default=1.0,
        ge=0.0,
        validation_alias=AliasChoices(
            "estimated_effort", "estimatedEffort", "estimated_hours"
        ),
    )
    type: TaskType = TaskType.STANDARD
    is_checkpoint: bool = Field(
        default=False, validation_alias=AliasChoices("is_checkpoint", "isCheckpoint")
    )
    checkpoint_type: CheckpointType | None = Field(
        default=None,
        validation_alias=AliasChoices("checkpoint_type", "checkpointType"),
    )
    max_retries: int | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("max_retries", "maxRetries"),
    )


# ── Graph elements ──────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class TaskNode:
    """Immutable node definition."""

    id: str
    title: str
    description: str = ""
    type: TaskType = TaskType.STANDARD
    priority: Priority = Priority.MEDIUM
    estimated_effort: float = 1.0
    required_skills: frozenset[str] = frozenset()
    dependencies: frozenset[str] = frozenset()
    is_checkpoint: bool = False
    checkpoint_type: CheckpointType | None = None
    original_task_id: str | None = None
    max_retries: int = 3


@dataclass(frozen=True, slots=True)
class Condition:
    kind: ConditionKind
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class Edge:
    id: str
    source: str
    target: str
    type: EdgeType = EdgeType.DEPENDENCY
    conditions: list[Condition] = field(default_factory=list)
    is_cyclical: bool = False
    # The DFS back-edge that closes a cycle
    is_feedback: bool = False
    cycle_purpose: CyclePurpose | None = None
    current_iteration: int = 0
    max_iterations: int = 5
    evaluation_history: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class CheckpointPair:
    code_review_node_id: str
    qa_node_id: str


@dataclass(frozen=True, slots=True)
class CycleInfo:
    node_ids: tuple[str, ...]
    edge_ids: tuple[str, ...]
    purpose: CyclePurpose

    def describe(self) -> str:
        path = " -> ".join((*self.node_ids, self.node_ids[0]))
        return f"{self.purpose.value}: {path}"


# ── Runtime state ───────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class NodeResult:
    """Outcome of one executor invocation, as seen by the run loop."""

    node_id: str
    success: bool
    output: str = ""
    duration_ms: int = 0
    report: QualityReport | None = None
    timed_out: bool = False
    error: str | None = None
    worker_id: str | None = None
    finished_at: float = field(default_factory=time.time)

    @property
    def quality_score(self) -> float | None:
        return self.report.score if self.report is not None else None


@dataclass
class NodeState:
    status: NodeStatus = NodeStatus.PENDING
    start_time: float | None = None
    end_time: float | None = None
    duration_ms: int | None = None
    quality_score: float | None = None
    previous_quality_score: float | None = None
    previous_coverage: float | None = None
    retry_count: int = 0
    assigned_worker_id: str | None = None
    error_history: list[str] = field(default_factory=list)
    last_result: NodeResult | None = None
    # Set when a node completed without a genuine success (timeout)
    warning: str | None = None
    # Epoch seconds before which a retried node may not be dispatched
    not_before: float | None = None
    remediation: dict[str, Any] | None = None


@dataclass
class GraphState:
    status: GraphStatus = GraphStatus.INITIALIZED
    current_nodes: set[str] = field(default_factory=set)
    completed_nodes: set[str] = field(default_factory=set)
    failed_nodes: set[str] = field(default_factory=set)
    available_nodes: list[str] = field(default_factory=list)
    max_parallelism: int = 3
    error_count: int = 0
    retry_count: int = 0
    progress: float = 0.0
    version: int = 0
    started_at: float | None = None
    finished_at: float | None = None
    last_error: str | None = None


# ── Memory Bank ─────────────────────────────────────────────────────────

EXECUTION_HISTORY = "execution_history"
WORKER_PERFORMANCE = "worker_performance"
FAILURE_PATTERNS = "failure_patterns"
SUCCESS_PATTERNS = "success_patterns"


@dataclass
class MemoryBank:
    """
    Ordered, append-only context keyed by category.

    Entries are never edited or removed. ``absorb`` is how a restored
    snapshot picks up entries recorded after it was taken.
    """

    categories: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    def append(self, category: str, entry: dict[str, Any]) -> None:
        self.categories.setdefault(category, []).append(dict(entry))

    def entries(self, category: str) -> list[dict[str, Any]]:
        return list(self.categories.get(category, ()))

    def absorb(self, newer: MemoryBank) -> None:
        """Append the entries ``newer`` holds beyond this bank's own."""
        for category, items in newer.categories.items():
            own = self.categories.setdefault(category, [])
            if len(items) > len(own):
                own.extend(dict(item) for item in items[len(own):])

    def worker_summary(self, worker_id: str) -> dict[str, Any]:
        """Aggregate performance for one worker."""
        runs = [
            e for e in self.categories.get(WORKER_PERFORMANCE, ())
            if e.get("worker_id") == worker_id
        ]
        if not runs:
            return {"worker_id": worker_id, "tasks": 0}
        scores = [e["quality_score"] for e in runs if e.get("quality_score") is not None]
        return {
            "worker_id": worker_id,
            "tasks": len(runs),
            "success_rate": sum(1 for e in runs if e.get("success")) / len(runs),
            "average_quality": sum(scores) / len(scores) if scores else None,
            "average_duration_ms": sum(e.get("duration_ms", 0) for e in runs) / len(runs),
        }


# ── Graph ───────────────────────────────────────────────────────────────


@dataclass
class TaskGraph:
    """A project's nodes, edges and live state."""

    project_id: str
    nodes: dict[str, TaskNode]
    edges: list[Edge]
    node_states: dict[str, NodeState]
    state: GraphState = field(default_factory=GraphState)
    memory: MemoryBank = field(default_factory=MemoryBank)
    checkpoint_map: dict[str, CheckpointPair] = field(default_factory=dict)
    cycles: list[CycleInfo] = field(default_factory=list)
    _incoming: dict[str, list[Edge]] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )
    _outgoing: dict[str, list[Edge]] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        self.reindex()

    def reindex(self) -> None:
        self._incoming = {node_id: [] for node_id in self.nodes}
        self._outgoing = {node_id: [] for node_id in self.nodes}
        for edge in self.edges:
            self._incoming[edge.target].append(edge)
            self._outgoing[edge.source].append(edge)

    # ── Lookups ─────────────────────────────────────────────────────────

    def node(self, node_id: str) -> TaskNode:
        return self.nodes[node_id]

    def status_of(self, node_id: str) -> NodeStatus:
        return self.node_states[node_id].status

    def incoming(self, node_id: str) -> list[Edge]:
        return list(self._incoming.get(node_id, ()))

    def outgoing(self, node_id: str) -> list[Edge]:
        return list(self._outgoing.get(node_id, ()))

    def edge(self, edge_id: str) -> Edge:
        for candidate in self.edges:
            if candidate.id == edge_id:
                return candidate
        raise KeyError(edge_id)

    def dependents_of(self, node_id: str) -> list[str]:
        return [e.target for e in self._outgoing.get(node_id, ())]

    def nodes_with_status(self, status: NodeStatus) -> list[str]:
        return [nid for nid, st in self.node_states.items() if st.status == status]

    # ── Derived views ───────────────────────────────────────────────────

    def topological_order(self) -> list[str]:
        """
        Kahn's ordering over non-feedback edges, ties broken by insertion
        order. Removing every feedback edge leaves a DAG.
        """
        indegree = {nid: 0 for nid in self.nodes}
        for edge in self.edges:
            if not edge.is_feedback:
                indegree[edge.target] += 1
        queue = deque(nid for nid in self.nodes if indegree[nid] == 0)
        order: list[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for edge in self._outgoing[current]:
                if edge.is_feedback:
                    continue
                indegree[edge.target] -= 1
                if indegree[edge.target] == 0:
                    queue.append(edge.target)
        return order

    def update_progress(self) -> float:
        total = len(self.nodes)
        done = len(self.state.completed_nodes)
        self.state.progress = round(100.0 * done / total, 2) if total else 100.0
        return self.state.progress

    def statistics(self) -> dict[str, Any]:
        by_status = {status.value: 0 for status in NodeStatus}
        for st in self.node_states.values():
            by_status[st.status.value] += 1
        return {
            "nodes": len(self.nodes),
            "checkpoint_nodes": sum(1 for n in self.nodes.values() if n.is_checkpoint),
            "edges": len(self.edges),
            "cyclical_edges": sum(1 for e in self.edges if e.is_cyclical),
            "cycles": len(self.cycles),
            "by_status": by_status,
            "progress": self.state.progress,
        }
