"""
GATEFLOW — Task Executor Interface
==================================
The opaque collaborator that performs a node's work.

The scheduler only consumes the boolean outcome, the free-text output and
the duration. Executors are invoked concurrently, one call per dispatched
node, and may be cancelled when a graph is force-paused or recovered.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from gateflow.core.config import Settings
from gateflow.orchestrator.models import TaskNode
from gateflow.workers.profiles import WorkerProfile


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    success: bool
    output: str = ""
    duration_ms: int = 0
    error: str | None = None


class TaskExecutor(Protocol):
    async def execute(
        self, prompt: str, task_id: str, working_directory: str | None
    ) -> ExecutionOutcome: ...


# Task types and keywords that justify the extended timeout tier
_EXTENDED_KEYWORDS = (
    "full stack",
    "fullstack",
    "migration",
    "integration",
    "deployment",
    "refactor",
    "architecture",
)


def select_timeout(
    node: TaskNode, settings: Settings, worker: WorkerProfile | None = None
) -> float:
    """
    Pick the default or extended timeout tier for ``node``.

    The effort compared against the threshold is the larger of the node's
    own estimate and the assigned worker's pattern-based hint.
    """
    effort = node.estimated_effort
    if worker is not None:
        effort = max(effort, worker.effort_hint(node))
    if effort >= settings.extended_timeout_effort_threshold:
        return settings.extended_task_timeout_seconds
    text = f"{node.title} {node.description}".lower()
    if not node.is_checkpoint and any(k in text for k in _EXTENDED_KEYWORDS):
        return settings.extended_task_timeout_seconds
    return settings.task_timeout_seconds
