"""
GATEFLOW — Graph Builder
========================
Turns a flat task list into an executable graph with injected
quality-checkpoint nodes.

For every standard task T the builder adds CodeReview(T) → QA(T) after it,
rewires every dependent of T onto QA(T), and closes the project with
FinalCodeReview (after every QA node) and FinalQA. Cycles the input
declares are detected in a separate pass, marked cyclical and bounded;
they are never rejected.

Usage:
    builder = GraphBuilder()
    graph, checkpoints = builder.build("proj-1", [{"id": "t1", "title": "..."}])
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from gateflow.core.config import Settings, get_settings
from gateflow.core.exceptions import GraphConstructionError
from gateflow.core.logging import get_logger
from gateflow.orchestrator.models import (
    CheckpointPair,
    CheckpointType,
    Condition,
    ConditionKind,
    CycleInfo,
    CyclePurpose,
    Edge,
    EdgeType,
    GraphState,
    NodeState,
    TaskGraph,
    TaskNode,
    TaskSpec,
    TaskType,
)

logger = get_logger(__name__)


# ── Naming ──────────────────────────────────────────────────────────────

CODE_REVIEW_SUFFIX = "__code_review"
QA_SUFFIX = "__qa"
FINAL_CODE_REVIEW_ID = "final_code_review"
FINAL_QA_ID = "final_qa"

CODE_REVIEW_SKILLS = frozenset({"code_review"})
QA_SKILLS = frozenset({"testing", "quality_assurance"})


def code_review_id(task_id: str) -> str:
    return f"{task_id}{CODE_REVIEW_SUFFIX}"


def qa_id(task_id: str) -> str:
    return f"{task_id}{QA_SUFFIX}"


def _checkpoint_effort(effort: float) -> float:
    return round(max(0.5, effort * 0.25), 2)


# ── Builder ─────────────────────────────────────────────────────────────


class GraphBuilder:
    """Builds ``TaskGraph`` instances; holds no per-project state."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def build(
        self,
        project_id: str,
        tasks: Iterable[TaskSpec | Mapping[str, Any]],
    ) -> tuple[TaskGraph, dict[str, CheckpointPair]]:
        """
        Build the graph for ``tasks``.

        Returns the graph and a map of original task id → checkpoint pair.
        Raises ``GraphConstructionError`` on malformed input; no graph is
        created in that case.
        """
        specs = self._parse(project_id, tasks)
        by_id = {spec.id: spec for spec in specs}

        def is_checkpoint_spec(spec: TaskSpec) -> bool:
            return spec.is_checkpoint or spec.type != TaskType.STANDARD

        def rewrite(dep: str) -> str:
            return dep if is_checkpoint_spec(by_id[dep]) else qa_id(dep)

        nodes: dict[str, TaskNode] = {}
        ordered_deps: dict[str, list[str]] = {}
        checkpoint_map: dict[str, CheckpointPair] = {}
        qa_nodes: list[str] = []

        for spec in specs:
            retries = (
                spec.max_retries
                if spec.max_retries is not None
                else self._settings.max_retries
            )
            if is_checkpoint_spec(spec):
                # Passed through unchanged, never receives its own checkpoints
                deps = list(dict.fromkeys(spec.dependencies))
                nodes[spec.id] = self._node_from_spec(spec, deps, retries, checkpoint=True)
                ordered_deps[spec.id] = deps
                continue

            deps = list(dict.fromkeys(rewrite(d) for d in spec.dependencies))
            nodes[spec.id] = self._node_from_spec(spec, deps, retries, checkpoint=False)
            ordered_deps[spec.id] = deps

            review = TaskNode(
                id=code_review_id(spec.id),
                title=f"Code Review: {spec.title}",
                description=(
                    f"Review the implementation of '{spec.title}' for correctness, "
                    f"maintainability and security.\n\n{spec.description}"
                ).strip(),
                type=TaskType.CODE_REVIEW,
                priority=spec.priority,
                estimated_effort=_checkpoint_effort(spec.estimated_effort),
                required_skills=CODE_REVIEW_SKILLS,
                dependencies=frozenset({spec.id}),
                is_checkpoint=True,
                checkpoint_type=CheckpointType.CODE_REVIEW,
                original_task_id=spec.id,
                max_retries=retries,
            )
            qa = TaskNode(
                id=qa_id(spec.id),
                title=f"QA Testing: {spec.title}",
                description=(
                    f"Build, test and verify the runtime behaviour of '{spec.title}'."
                ),
                type=TaskType.QA_TESTING,
                priority=spec.priority,
                estimated_effort=_checkpoint_effort(spec.estimated_effort),
                required_skills=QA_SKILLS,
                dependencies=frozenset({review.id}),
                is_checkpoint=True,
                checkpoint_type=CheckpointType.QA_TESTING,
                original_task_id=spec.id,
                max_retries=retries,
            )
            nodes[review.id] = review
            ordered_deps[review.id] = [spec.id]
            nodes[qa.id] = qa
            ordered_deps[qa.id] = [review.id]
            qa_nodes.append(qa.id)
            checkpoint_map[spec.id] = CheckpointPair(review.id, qa.id)

        final_deps = qa_nodes or [spec.id for spec in specs]
        nodes[FINAL_CODE_REVIEW_ID] = TaskNode(
            id=FINAL_CODE_REVIEW_ID,
            title="Final Code Review",
            description="Project-wide review of every verified task.",
            type=TaskType.CODE_REVIEW,
            required_skills=CODE_REVIEW_SKILLS,
            dependencies=frozenset(final_deps),
            is_checkpoint=True,
            checkpoint_type=CheckpointType.FINAL_CODE_REVIEW,
            max_retries=self._settings.max_retries,
        )
        ordered_deps[FINAL_CODE_REVIEW_ID] = final_deps
        nodes[FINAL_QA_ID] = TaskNode(
            id=FINAL_QA_ID,
            title="Final QA Testing",
            description="Project-wide build, test and runtime verification.",
            type=TaskType.QA_TESTING,
            required_skills=QA_SKILLS,
            dependencies=frozenset({FINAL_CODE_REVIEW_ID}),
            is_checkpoint=True,
            checkpoint_type=CheckpointType.FINAL_QA_TESTING,
            max_retries=self._settings.max_retries,
        )
        ordered_deps[FINAL_QA_ID] = [FINAL_CODE_REVIEW_ID]

        edges = [
            self._make_edge(nodes[dep], nodes[target])
            for target, deps in ordered_deps.items()
            for dep in deps
        ]
        cycles = mark_cycles(nodes, edges, self._settings.max_cyclical_iterations)

        graph = TaskGraph(
            project_id=project_id,
            nodes=nodes,
            edges=edges,
            node_states={node_id: NodeState() for node_id in nodes},
            state=GraphState(max_parallelism=self._settings.max_parallelism),
            checkpoint_map=checkpoint_map,
            cycles=cycles,
        )
        logger.info(
            "graph.built",
            project_id=project_id,
            tasks=len(specs),
            nodes=len(nodes),
            edges=len(edges),
            cycles=len(cycles),
        )
        return graph, dict(checkpoint_map)

    # ── Internals ───────────────────────────────────────────────────────

    def _parse(
        self,
        project_id: str,
        tasks: Iterable[TaskSpec | Mapping[str, Any]],
    ) -> list[TaskSpec]:
        specs: list[TaskSpec] = []
        for index, raw in enumerate(tasks):
            if isinstance(raw, TaskSpec):
                specs.append(raw)
                continue
            try:
                specs.append(TaskSpec.model_validate(raw))
            except ValidationError as exc:
                raise GraphConstructionError(
                    f"Task #{index} is malformed: {exc.errors()[0]['msg']}",
                    project_id=project_id,
                ) from exc

        if not specs:
            raise GraphConstructionError("Task list is empty.", project_id=project_id)

        reserved = {FINAL_CODE_REVIEW_ID, FINAL_QA_ID}
        seen: set[str] = set()
        for spec in specs:
            if spec.id in seen:
                raise GraphConstructionError(
                    f"Duplicate task id '{spec.id}'.",
                    project_id=project_id,
                    node_id=spec.id,
                )
            if spec.id in reserved or spec.id.endswith((CODE_REVIEW_SUFFIX, QA_SUFFIX)):
                raise GraphConstructionError(
                    f"Task id '{spec.id}' collides with a generated checkpoint id.",
                    project_id=project_id,
                    node_id=spec.id,
                )
            seen.add(spec.id)

        for spec in specs:
            for dep in spec.dependencies:
                if dep == spec.id:
                    raise GraphConstructionError(
                        f"Task '{spec.id}' depends on itself.",
                        project_id=project_id,
                        node_id=spec.id,
                    )
                if dep not in seen:
                    raise GraphConstructionError(
                        f"Task '{spec.id}' depends on unknown task '{dep}'.",
                        project_id=project_id,
                        node_id=spec.id,
                    )
        return specs

    @staticmethod
    def _node_from_spec(
        spec: TaskSpec, deps: list[str], retries: int, *, checkpoint: bool
    ) -> TaskNode:
        checkpoint_type = spec.checkpoint_type
        if checkpoint and checkpoint_type is None and spec.type == TaskType.QA_TESTING:
            checkpoint_type = CheckpointType.QA_TESTING
        elif checkpoint and checkpoint_type is None and spec.type == TaskType.CODE_REVIEW:
            checkpoint_type = CheckpointType.CODE_REVIEW
        return TaskNode(
            id=spec.id,
            title=spec.title,
            description=spec.description,
            type=spec.type,
            priority=spec.priority,
            estimated_effort=spec.estimated_effort,
            required_skills=frozenset(s.strip().lower() for s in spec.skills if s.strip()),
            dependencies=frozenset(deps),
            is_checkpoint=checkpoint,
            checkpoint_type=checkpoint_type,
            max_retries=retries,
        )

    @staticmethod
    def _make_edge(source: TaskNode, target: TaskNode) -> Edge:
        if target.checkpoint_type in (
            CheckpointType.FINAL_CODE_REVIEW,
            CheckpointType.FINAL_QA_TESTING,
        ):
            edge_type = EdgeType.FINAL_REVIEW_DEPENDENCY
        elif target.is_checkpoint:
            edge_type = EdgeType.CHECKPOINT_DEPENDENCY
        else:
            edge_type = EdgeType.DEPENDENCY

        conditions = [Condition(ConditionKind.DEPENDENCY)]
        if source.is_checkpoint:
            conditions.append(Condition(ConditionKind.QUALITY_GATE))
        if target.is_checkpoint:
            conditions.append(Condition(ConditionKind.AGENT_AVAILABILITY))
        else:
            conditions.append(Condition(ConditionKind.RETRY))
        return Edge(
            id=f"{source.id}->{target.id}",
            source=source.id,
            target=target.id,
            type=edge_type,
            conditions=conditions,
        )


# ── Cycle detection ─────────────────────────────────────────────────────


def find_cycles(
    node_ids: Iterable[str], edges: list[Edge]
) -> list[tuple[list[str], list[Edge]]]:
    """
    Iterative depth-first search over ``edges``.

    Each back-edge into the active path yields one cycle as
    ``(node ids on the cycle, edges on the cycle)``; the back-edge is the
    last edge of the list.
    """
    outgoing: dict[str, list[Edge]] = {}
    for edge in edges:
        outgoing.setdefault(edge.source, []).append(edge)

    visited: set[str] = set()
    cycles: list[tuple[list[str], list[Edge]]] = []

    for root in node_ids:
        if root in visited:
            continue
        visited.add(root)
        path: list[str] = [root]
        path_edges: list[Edge] = []
        on_path: dict[str, int] = {root: 0}
        stack = [iter(outgoing.get(root, ()))]

        while stack:
            edge = next(stack[-1], None)
            if edge is None:
                stack.pop()
                on_path.pop(path.pop())
                if path_edges:
                    path_edges.pop()
                continue
            if edge.target in on_path:
                start = on_path[edge.target]
                cycles.append((path[start:], [*path_edges[start:], edge]))
                continue
            if edge.target in visited:
                continue
            visited.add(edge.target)
            on_path[edge.target] = len(path)
            path.append(edge.target)
            path_edges.append(edge)
            stack.append(iter(outgoing.get(edge.target, ())))
    return cycles


def classify_cycle(nodes: Iterable[TaskNode]) -> CyclePurpose:
    types = {node.type for node in nodes}
    has_review = TaskType.CODE_REVIEW in types
    has_qa = TaskType.QA_TESTING in types
    if has_review and has_qa:
        return CyclePurpose.QUALITY_ITERATION
    if has_review:
        return CyclePurpose.REVIEW_CYCLE
    if has_qa:
        return CyclePurpose.TEST_FIX_CYCLE
    return CyclePurpose.GENERAL


def mark_cycles(
    nodes: Mapping[str, TaskNode], edges: list[Edge], max_iterations: int
) -> list[CycleInfo]:
    """Flag every edge on a detected cycle and record the cycle's purpose."""
    infos: list[CycleInfo] = []
    for cycle_nodes, cycle_edges in find_cycles(nodes.keys(), edges):
        purpose = classify_cycle(nodes[nid] for nid in cycle_nodes)
        for edge in cycle_edges:
            edge.is_cyclical = True
            edge.max_iterations = max_iterations
            if edge.cycle_purpose is None:
                edge.cycle_purpose = purpose
        cycle_edges[-1].is_feedback = True
        info = CycleInfo(
            node_ids=tuple(cycle_nodes),
            edge_ids=tuple(e.id for e in cycle_edges),
            purpose=purpose,
        )
        infos.append(info)
        logger.warning("graph.cycle_detected", cycle=info.describe())
    return infos
