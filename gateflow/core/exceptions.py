"""
GATEFLOW — Centralized Exception Taxonomy
=========================================
Category-based exception hierarchy with a severity property.

Fatal kinds (``GraphConstructionError``, ``SchedulingError``,
``RecoveryExhausted``) end a run and are reported through a single terminal
event. ``ExecutionError`` and ``QualityGateFailure`` are recovered locally by
the remediation policy and only ever surface as remediation events.
``CheckpointError`` advances recovery to its next strategy.

Usage:
    from gateflow.core.exceptions import SchedulingError

    raise SchedulingError(
        "Run loop exceeded iteration ceiling",
        project_id="proj-1",
    )
"""

from __future__ import annotations

from enum import StrEnum


class ErrorSeverity(StrEnum):
    """
    Error severity levels for exception classification.

    LOW < MEDIUM < HIGH < CRITICAL
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class GateflowError(Exception):
    """
    Base exception for all gateflow errors.

    Provides:
    - severity: Classification for error handling/routing
    - error_code: Unique identifier for programmatic handling
    - Tracing identifiers: project_id, node_id, worker_id
    """

    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    error_code: str = "GATEFLOW_ERROR"
    fatal: bool = False

    def __init__(
        self,
        message: str,
        *,
        project_id: str | None = None,
        node_id: str | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.project_id = project_id
        self.node_id = node_id
        self.worker_id = worker_id
        super().__init__(message)

    @property
    def kind(self) -> str:
        """Taxonomy kind reported in terminal events."""
        return self.__class__.__name__

    def __repr__(self) -> str:
        parts = [
            f"{self.__class__.__name__}(",
            f"error_code={self.error_code!r}, ",
            f"severity={self.severity.value!r}",
        ]
        if self.project_id:
            parts.append(f", project_id={self.project_id!r}")
        if self.node_id:
            parts.append(f", node_id={self.node_id!r}")
        if self.worker_id:
            parts.append(f", worker_id={self.worker_id!r}")
        parts.append(")")
        return "".join(parts)


# ── Orchestrator Exceptions ───────────────────────────────────────────────


class OrchestratorError(GateflowError):
    """Errors in the orchestration layer (graph shape, run loop, state)."""

    error_code = "ORCHESTRATOR_ERROR"


class GraphConstructionError(OrchestratorError):
    """Raised when a task list cannot be turned into a graph."""

    severity = ErrorSeverity.HIGH
    error_code = "GRAPH_CONSTRUCTION_ERROR"
    fatal = True


class SchedulingError(OrchestratorError):
    """Raised when the run loop violates a hard bound."""

    severity = ErrorSeverity.CRITICAL
    error_code = "SCHEDULING_ERROR"
    fatal = True


class ProjectNotFoundError(OrchestratorError):
    """Raised when a project id is unknown to the registry."""

    severity = ErrorSeverity.LOW
    error_code = "PROJECT_NOT_FOUND"


# ── Execution Exceptions ──────────────────────────────────────────────────


class ExecutionError(GateflowError):
    """Raised when an executor call fails or times out."""

    severity = ErrorSeverity.MEDIUM
    error_code = "EXECUTION_ERROR"


class QualityGateFailure(GateflowError):
    """Raised when a node's quality score falls below the threshold."""

    severity = ErrorSeverity.MEDIUM
    error_code = "QUALITY_GATE_FAILURE"

    def __init__(
        self,
        message: str,
        *,
        score: float | None = None,
        threshold: float | None = None,
        **kwargs: str | None,
    ) -> None:
        self.score = score
        self.threshold = threshold
        super().__init__(message, **kwargs)


# ── Checkpoint Exceptions ─────────────────────────────────────────────────


class CheckpointError(GateflowError):
    """Raised when a snapshot is missing or fails validation."""

    severity = ErrorSeverity.HIGH
    error_code = "CHECKPOINT_ERROR"


class RecoveryExhausted(CheckpointError):
    """Raised when every recovery strategy has failed."""

    severity = ErrorSeverity.CRITICAL
    error_code = "RECOVERY_EXHAUSTED"
    fatal = True


# ── Persistence Exceptions ────────────────────────────────────────────────


class PersistenceError(GateflowError):
    """Raised when the persistence store rejects a call."""

    severity = ErrorSeverity.MEDIUM
    error_code = "PERSISTENCE_ERROR"


# ── Configuration Exceptions ──────────────────────────────────────────────


class ConfigurationError(GateflowError):
    """Errors in configuration (missing settings, invalid values)."""

    severity = ErrorSeverity.HIGH
    error_code = "CONFIGURATION_ERROR"


class InvalidConfigurationError(ConfigurationError):
    """Raised when a configuration value is invalid."""

    error_code = "INVALID_CONFIGURATION_ERROR"
