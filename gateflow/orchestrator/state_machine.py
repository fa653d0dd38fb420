"""
GATEFLOW — Graph & Node State Machines
======================================
Transition whitelists for the project graph and for individual nodes.

Invariants enforced:
- Only listed statuses may exist
- Undefined transitions raise ``InvalidTransitionError``
- ``completed`` is terminal for the graph; ``blocked`` is terminal for a
  node until a manual retry of the whole graph
"""

from __future__ import annotations

from enum import StrEnum


# ── Statuses ────────────────────────────────────────────────────────────


class GraphStatus(StrEnum):
    INITIALIZED = "initialized"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class NodeStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    RETRY = "retry"


class NodeTransition(StrEnum):
    """Why a node changed status. Carried on events and log entries."""

    DISPATCH = "dispatch"
    SUCCEED = "succeed"
    TIMEOUT = "timeout"
    FAIL = "fail"
    SCHEDULE_RETRY = "schedule_retry"
    REQUEUE = "requeue"
    BLOCK = "block"
    REWORK = "rework"
    CANCEL = "cancel"
    RECOVER = "recover"
    MANUAL_RETRY = "manual_retry"


# ── Transition Maps ─────────────────────────────────────────────────────

VALID_GRAPH_TRANSITIONS: dict[GraphStatus, frozenset[GraphStatus]] = {
    GraphStatus.INITIALIZED: frozenset({GraphStatus.EXECUTING}),
    GraphStatus.EXECUTING: frozenset(
        {GraphStatus.PAUSED, GraphStatus.COMPLETED, GraphStatus.FAILED}
    ),
    GraphStatus.PAUSED: frozenset({GraphStatus.EXECUTING, GraphStatus.FAILED}),
    # Manual or automatic retry
    GraphStatus.FAILED: frozenset({GraphStatus.EXECUTING}),
    GraphStatus.COMPLETED: frozenset(),
}

# RUNNING -> PENDING covers forced cancellation and recovery rollback.
# COMPLETED -> PENDING covers rework triggered by a failing checkpoint.
# BLOCKED -> PENDING is only taken by a manual retry of a failed graph.
VALID_NODE_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.RUNNING}),
    NodeStatus.RUNNING: frozenset(
        {NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.PENDING}
    ),
    NodeStatus.FAILED: frozenset({NodeStatus.RETRY, NodeStatus.BLOCKED}),
    NodeStatus.RETRY: frozenset({NodeStatus.PENDING}),
    NodeStatus.COMPLETED: frozenset({NodeStatus.PENDING}),
    NodeStatus.BLOCKED: frozenset({NodeStatus.PENDING}),
}


# ── Exceptions ──────────────────────────────────────────────────────────


class InvalidTransitionError(Exception):
    """Raised when a transition is not in the whitelist."""

    def __init__(self, kind: str, from_state: str, to_state: str) -> None:
        self.kind = kind
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid {kind} transition: '{from_state}' → '{to_state}'."
        )


# ── State Machine ───────────────────────────────────────────────────────


class GraphStateMachine:
    """Stateless validator for graph status transitions."""

    @staticmethod
    def validate_transition(current: GraphStatus, target: GraphStatus) -> None:
        if target not in VALID_GRAPH_TRANSITIONS[current]:
            raise InvalidTransitionError("graph", current.value, target.value)

    @staticmethod
    def get_allowed_transitions(current: GraphStatus) -> frozenset[GraphStatus]:
        return VALID_GRAPH_TRANSITIONS[current]


class NodeStateMachine:
    """Stateless validator for node status transitions."""

    @staticmethod
    def validate_transition(current: NodeStatus, target: NodeStatus) -> None:
        """
        Raise ``InvalidTransitionError`` if ``current → target`` is not
        whitelisted. A self-transition is never valid.
        """
        if target not in VALID_NODE_TRANSITIONS[current]:
            raise InvalidTransitionError("node", current.value, target.value)

    @staticmethod
    def get_allowed_transitions(current: NodeStatus) -> frozenset[NodeStatus]:
        return VALID_NODE_TRANSITIONS[current]
