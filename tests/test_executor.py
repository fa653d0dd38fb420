"""
GATEFLOW — Timeout Tier Tests
=============================
Validates:
- Explicit effort at or above the threshold selects the extended tier
- Long-running keywords extend development tasks but not checkpoints
- The assigned worker's pattern hours can push a task into the extended tier
"""

from __future__ import annotations

import pytest

from gateflow.core.config import Settings
from gateflow.integrations.executor import select_timeout
from gateflow.orchestrator.models import TaskNode
from gateflow.workers.profiles import WorkerProfile, default_profiles


# ── Helpers ──────────────────────────────────────────────────────────────


@pytest.fixture
def tiers() -> Settings:
    return Settings(
        task_timeout_seconds=10.0,
        extended_task_timeout_seconds=60.0,
        extended_timeout_effort_threshold=8.0,
    )


@pytest.fixture
def workers() -> dict[str, WorkerProfile]:
    return {w.worker_id: w for w in default_profiles()}


AUTH_API = TaskNode(
    id="A",
    title="Add auth API",
    description="Token endpoint backed by the user database",
)


# ── Tests ────────────────────────────────────────────────────────────────


class TestSelectTimeout:

    def test_default_tier(self, tiers):
        node = TaskNode(id="T", title="Build login form")
        assert select_timeout(node, tiers) == 10.0

    def test_explicit_effort_extends(self, tiers):
        node = TaskNode(id="T", title="Build login form", estimated_effort=8.0)
        assert select_timeout(node, tiers) == 60.0

    def test_keyword_extends_development_task(self, tiers):
        node = TaskNode(id="M", title="Database migration for orders")
        assert select_timeout(node, tiers) == 60.0

    def test_keyword_ignored_on_checkpoint(self, tiers):
        node = TaskNode(
            id="M__qa",
            title="QA: Database migration for orders",
            is_checkpoint=True,
            original_task_id="M",
        )
        assert select_timeout(node, tiers) == 10.0

    def test_worker_hint_extends(self, tiers, workers):
        backend = workers["python_backend_specialist"]

        assert select_timeout(AUTH_API, tiers) == 10.0
        assert select_timeout(AUTH_API, tiers, backend) == 60.0

    def test_small_hint_keeps_default(self, tiers, workers):
        node = TaskNode(id="T", title="Build login form")
        assert select_timeout(node, tiers, workers["react_frontend_specialist"]) == 10.0


class TestEffortHint:

    def test_sums_matching_patterns(self, workers):
        # auth (5h) + api (4h) + database (3h)
        assert workers["python_backend_specialist"].effort_hint(AUTH_API) == 12.0

    def test_no_match_is_zero(self, workers):
        node = TaskNode(id="T", title="Tidy stylesheet colours")
        assert workers["python_backend_specialist"].effort_hint(node) == 0
