"""
GATEFLOW — Executor Prompt Synthesis
====================================
Builds the instruction text handed to the Task Executor for one node.

Retries and reworks carry the previous attempt's issues and the structured
remediation plan so the executor does not repeat the same mistake.
"""

from __future__ import annotations

from typing import Any

from gateflow.orchestrator.models import NodeState, TaskGraph, TaskNode
from gateflow.orchestrator.state_machine import NodeStatus
from gateflow.workers.profiles import WorkerProfile

_CHECKPOINT_INSTRUCTIONS = (
    "Report the result on its own line as `QUALITY_SCORE: <0.0-1.0>`. "
    "List each problem found on its own line as `ISSUE: <description>` and "
    "security-critical findings as `SECURITY: <description>`."
)


def build_prompt(
    graph: TaskGraph,
    node: TaskNode,
    worker: WorkerProfile | None = None,
) -> str:
    state = graph.node_states[node.id]
    sections: list[str] = [f"# Task: {node.title}"]
    if node.description:
        sections.append(node.description)
    if worker is not None:
        sections.append(f"You are acting as: {worker.specialization}.")
    if node.required_skills:
        sections.append("Required skills: " + ", ".join(sorted(node.required_skills)))

    completed = [
        graph.nodes[dep]
        for dep in sorted(node.dependencies)
        if graph.node_states[dep].status == NodeStatus.COMPLETED
    ]
    if completed:
        lines = ["## Completed prerequisites"]
        lines.extend(f"- {dep.title} ({dep.id})" for dep in completed)
        sections.append("\n".join(lines))

    if node.original_task_id is not None:
        original = graph.nodes[node.original_task_id]
        sections.append(f"## Subject under verification\n{original.title}: {original.description}")
    if node.is_checkpoint:
        sections.append(_CHECKPOINT_INSTRUCTIONS)

    if state.retry_count and state.remediation is not None:
        sections.append(_retry_section(state, state.remediation))
    return "\n\n".join(sections)


def _retry_section(state: NodeState, plan: dict[str, Any]) -> str:
    lines = [
        f"## Attempt {state.retry_count + 1}: previous attempt failed "
        f"({plan['severity']} severity)"
    ]
    if state.error_history:
        lines.append(f"Last error: {state.error_history[-1]}")
    if plan.get("issues"):
        lines.append("Issues to resolve, highest priority first:")
        lines.extend(f"- [{i['category']}] {i['description']}" for i in plan["issues"])
    if plan.get("steps"):
        lines.append("Remediation steps:")
        lines.extend(f"{n}. {step}" for n, step in enumerate(plan["steps"], start=1))
    if plan.get("verification"):
        lines.append("Before finishing:")
        lines.extend(f"- {step}" for step in plan["verification"])
    return "\n".join(lines)
