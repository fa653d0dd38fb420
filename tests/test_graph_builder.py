"""
GATEFLOW — Graph Builder Tests
==============================
Validates:
- N standard tasks expand to 3N + 2 nodes
- Dependencies are rewritten onto the dependency's QA node
- Final review depends on every QA node
- Explicit checkpoint tasks pass through unchanged
- Edge conditions follow source/target checkpoint flags
- Malformed task lists raise GraphConstructionError
- Cycles are detected, classified and bounded
"""

from __future__ import annotations

import pytest

from gateflow.core.exceptions import GraphConstructionError
from gateflow.orchestrator.graph_builder import (
    FINAL_CODE_REVIEW_ID,
    FINAL_QA_ID,
    GraphBuilder,
    classify_cycle,
    code_review_id,
    find_cycles,
    qa_id,
)
from gateflow.orchestrator.models import (
    CheckpointType,
    ConditionKind,
    CyclePurpose,
    Edge,
    EdgeType,
    TaskNode,
    TaskSpec,
    TaskType,
)


# ── Helpers ──────────────────────────────────────────────────────────────


def _kinds(edge: Edge) -> list[ConditionKind]:
    return [c.kind for c in edge.conditions]


@pytest.fixture
def builder(settings) -> GraphBuilder:
    return GraphBuilder(settings)


# ── Tests ────────────────────────────────────────────────────────────────


class TestExpansion:
    """Checkpoint insertion and dependency rewriting."""

    def test_single_task_yields_five_nodes(self, builder, login_task):
        graph, checkpoints = builder.build("p1", login_task)

        assert set(graph.nodes) == {
            "T",
            "T__code_review",
            "T__qa",
            FINAL_CODE_REVIEW_ID,
            FINAL_QA_ID,
        }
        assert checkpoints["T"].code_review_node_id == "T__code_review"
        assert checkpoints["T"].qa_node_id == "T__qa"
        assert graph.checkpoint_map == checkpoints

    def test_node_count_is_three_n_plus_two(self, builder, chain_tasks):
        graph, _ = builder.build("p1", chain_tasks)
        assert len(graph.nodes) == 3 * len(chain_tasks) + 2

    def test_dependency_rewritten_to_qa_node(self, builder, chain_tasks):
        graph, _ = builder.build("p1", chain_tasks)

        assert graph.nodes["B"].dependencies == frozenset({qa_id("A")})
        assert graph.nodes["C"].dependencies == frozenset({qa_id("B")})
        assert graph.nodes[code_review_id("B")].dependencies == frozenset({"B"})
        assert graph.nodes[qa_id("B")].dependencies == frozenset({code_review_id("B")})

    def test_final_review_depends_on_all_qa_nodes(self, builder, chain_tasks):
        graph, _ = builder.build("p1", chain_tasks)

        assert graph.nodes[FINAL_CODE_REVIEW_ID].dependencies == frozenset(
            {qa_id("A"), qa_id("B"), qa_id("C")}
        )
        assert graph.nodes[FINAL_QA_ID].dependencies == frozenset({FINAL_CODE_REVIEW_ID})

    def test_checkpoint_nodes_carry_original_task(self, builder, login_task):
        graph, _ = builder.build("p1", login_task)

        review = graph.nodes["T__code_review"]
        qa = graph.nodes["T__qa"]
        assert review.is_checkpoint and qa.is_checkpoint
        assert review.original_task_id == "T"
        assert qa.original_task_id == "T"
        assert review.checkpoint_type == CheckpointType.CODE_REVIEW
        assert qa.checkpoint_type == CheckpointType.QA_TESTING
        assert review.title == "Code Review: Build login form"
        assert qa.title == "QA Testing: Build login form"
        assert review.required_skills == frozenset({"code_review"})
        assert qa.required_skills == frozenset({"testing", "quality_assurance"})

    def test_explicit_checkpoint_task_passes_through(self, builder):
        tasks = [
            {"id": "impl", "title": "Build API service", "skills": ["python"]},
            {
                "id": "audit",
                "title": "Security audit",
                "type": "code_review",
                "dependencies": ["impl"],
            },
        ]
        graph, checkpoints = builder.build("p1", tasks)

        assert "audit__code_review" not in graph.nodes
        assert "audit" not in checkpoints
        assert graph.nodes["audit"].is_checkpoint
        assert graph.nodes["audit"].dependencies == frozenset({"impl"})
        # 2 generated for impl, audit itself, plus the final pair
        assert len(graph.nodes) == 6

    def test_task_spec_accepts_camel_case_aliases(self):
        spec = TaskSpec.model_validate(
            {
                "id": "x",
                "title": "X",
                "requiredSkills": ["python"],
                "estimatedEffort": 3,
                "maxRetries": 1,
            }
        )
        assert spec.skills == ["python"]
        assert spec.estimated_effort == 3.0
        assert spec.max_retries == 1

    def test_max_retries_defaults_from_settings(self, builder, login_task):
        graph, _ = builder.build("p1", login_task)
        assert graph.nodes["T"].max_retries == 3

    def test_initial_state(self, builder, chain_tasks):
        graph, _ = builder.build("p1", chain_tasks)

        assert all(st.status == "pending" for st in graph.node_states.values())
        assert graph.state.status == "initialized"
        assert graph.state.max_parallelism == 3
        assert graph.cycles == []


class TestEdges:
    """Edge typing and attached conditions."""

    def test_standard_to_checkpoint_edge(self, builder, login_task):
        graph, _ = builder.build("p1", login_task)
        edge = graph.edge("T->T__code_review")

        assert edge.type == EdgeType.CHECKPOINT_DEPENDENCY
        assert _kinds(edge) == [ConditionKind.DEPENDENCY, ConditionKind.AGENT_AVAILABILITY]

    def test_checkpoint_to_checkpoint_edge_has_quality_gate(self, builder, login_task):
        graph, _ = builder.build("p1", login_task)
        edge = graph.edge("T__code_review->T__qa")

        assert _kinds(edge) == [
            ConditionKind.DEPENDENCY,
            ConditionKind.QUALITY_GATE,
            ConditionKind.AGENT_AVAILABILITY,
        ]

    def test_checkpoint_to_standard_edge_has_retry(self, builder, chain_tasks):
        graph, _ = builder.build("p1", chain_tasks)
        edge = graph.edge("A__qa->B")

        assert edge.type == EdgeType.DEPENDENCY
        assert _kinds(edge) == [
            ConditionKind.DEPENDENCY,
            ConditionKind.QUALITY_GATE,
            ConditionKind.RETRY,
        ]

    def test_final_edges_are_typed(self, builder, login_task):
        graph, _ = builder.build("p1", login_task)

        assert graph.edge(f"T__qa->{FINAL_CODE_REVIEW_ID}").type == EdgeType.FINAL_REVIEW_DEPENDENCY
        assert (
            graph.edge(f"{FINAL_CODE_REVIEW_ID}->{FINAL_QA_ID}").type
            == EdgeType.FINAL_REVIEW_DEPENDENCY
        )

    def test_incoming_index_matches_dependencies(self, builder, chain_tasks):
        graph, _ = builder.build("p1", chain_tasks)
        for node_id, node in graph.nodes.items():
            assert {e.source for e in graph.incoming(node_id)} == set(node.dependencies)


class TestValidation:
    """Malformed input is rejected before any graph exists."""

    def test_empty_list(self, builder):
        with pytest.raises(GraphConstructionError, match="empty"):
            builder.build("p1", [])

    def test_duplicate_id(self, builder):
        tasks = [{"id": "a", "title": "A"}, {"id": "a", "title": "Again"}]
        with pytest.raises(GraphConstructionError, match="Duplicate"):
            builder.build("p1", tasks)

    def test_unknown_dependency(self, builder):
        tasks = [{"id": "a", "title": "A", "dependencies": ["ghost"]}]
        with pytest.raises(GraphConstructionError, match="unknown task 'ghost'"):
            builder.build("p1", tasks)

    def test_self_dependency(self, builder):
        tasks = [{"id": "a", "title": "A", "dependencies": ["a"]}]
        with pytest.raises(GraphConstructionError, match="itself"):
            builder.build("p1", tasks)

    def test_reserved_id(self, builder):
        with pytest.raises(GraphConstructionError, match="collides"):
            builder.build("p1", [{"id": FINAL_QA_ID, "title": "Sneaky"}])

    def test_missing_title(self, builder):
        with pytest.raises(GraphConstructionError, match="malformed"):
            builder.build("p1", [{"id": "a"}])

    def test_error_is_fatal(self, builder):
        with pytest.raises(GraphConstructionError) as exc_info:
            builder.build("p1", [])
        assert exc_info.value.fatal is True
        assert exc_info.value.project_id == "p1"


class TestCycles:
    """Cycle detection, classification and bounding."""

    def test_mutual_dependency_is_detected(self, builder):
        tasks = [
            {"id": "a", "title": "A", "dependencies": ["b"]},
            {"id": "b", "title": "B", "dependencies": ["a"]},
        ]
        graph, _ = builder.build("p1", tasks)

        assert len(graph.cycles) == 1
        cycle = graph.cycles[0]
        assert cycle.purpose == CyclePurpose.QUALITY_ITERATION
        cyclical = [e for e in graph.edges if e.is_cyclical]
        assert {e.id for e in cyclical} == set(cycle.edge_ids)
        assert all(e.max_iterations == 5 for e in cyclical)
        assert sum(1 for e in cyclical if e.is_feedback) == 1

    def test_feedback_edge_breaks_the_cycle(self, builder):
        tasks = [
            {"id": "a", "title": "A", "dependencies": ["b"]},
            {"id": "b", "title": "B", "dependencies": ["a"]},
        ]
        graph, _ = builder.build("p1", tasks)
        assert len(graph.topological_order()) == len(graph.nodes)

    def test_acyclic_graph_has_no_cyclical_edges(self, builder, chain_tasks):
        graph, _ = builder.build("p1", chain_tasks)
        assert not any(e.is_cyclical for e in graph.edges)

    def test_find_cycles_on_raw_edges(self):
        edges = [
            Edge(id="x->y", source="x", target="y"),
            Edge(id="y->z", source="y", target="z"),
            Edge(id="z->x", source="z", target="x"),
        ]
        cycles = find_cycles(["x", "y", "z"], edges)

        assert len(cycles) == 1
        nodes, cycle_edges = cycles[0]
        assert nodes == ["x", "y", "z"]
        assert cycle_edges[-1].id == "z->x"

    @pytest.mark.parametrize(
        "types, purpose",
        [
            ({TaskType.CODE_REVIEW, TaskType.QA_TESTING}, CyclePurpose.QUALITY_ITERATION),
            ({TaskType.CODE_REVIEW}, CyclePurpose.REVIEW_CYCLE),
            ({TaskType.QA_TESTING}, CyclePurpose.TEST_FIX_CYCLE),
            ({TaskType.STANDARD}, CyclePurpose.GENERAL),
        ],
    )
    def test_classify_cycle(self, types, purpose):
        nodes = [TaskNode(id=f"n{i}", title="n", type=t) for i, t in enumerate(types)]
        assert classify_cycle(nodes) == purpose
