"""
GATEFLOW — Project Registry Tests
=================================
Validates:
- Project creation, lookup and duplicate rejection
- Projects run in isolation from each other
- Background start, pause / resume and manual retry routing
- Listing merges live projects with persisted-only ones
- Deletion stops the run and removes persisted checkpoints
"""

from __future__ import annotations

import asyncio

import pytest

from gateflow.core.exceptions import GraphConstructionError, ProjectNotFoundError
from gateflow.integrations.executor import ExecutionOutcome
from gateflow.orchestrator.registry import ProjectRegistry
from gateflow.orchestrator.state_machine import GraphStatus
from gateflow.storage.persistence import InMemoryPersistenceStore


# ── Helpers ──────────────────────────────────────────────────────────────


@pytest.fixture
def store() -> InMemoryPersistenceStore:
    return InMemoryPersistenceStore()


@pytest.fixture
def registry(settings, executor, store) -> ProjectRegistry:
    return ProjectRegistry(executor, settings=settings, persistence=store)


# ── Tests ────────────────────────────────────────────────────────────────


class TestProjectLifecycle:

    def test_create_and_get(self, registry, login_task):
        scheduler = registry.create_project(login_task, project_id="alpha")

        assert registry.get("alpha") is scheduler
        assert scheduler.status == GraphStatus.INITIALIZED
        assert len(scheduler.graph.nodes) == 5

    def test_generated_project_id(self, registry, login_task):
        scheduler = registry.create_project(login_task)
        assert len(scheduler.project_id) == 32

    def test_unknown_project(self, registry):
        with pytest.raises(ProjectNotFoundError):
            registry.get("ghost")

    def test_duplicate_project_id(self, registry, login_task):
        registry.create_project(login_task, project_id="alpha")
        with pytest.raises(ValueError, match="already registered"):
            registry.create_project(login_task, project_id="alpha")

    def test_invalid_task_list_not_registered(self, registry):
        tasks = [{"id": "a", "title": "A", "dependencies": ["missing"]}]
        with pytest.raises(GraphConstructionError):
            registry.create_project(tasks, project_id="broken")
        with pytest.raises(ProjectNotFoundError):
            registry.get("broken")

    @pytest.mark.asyncio
    async def test_run_project(self, registry, login_task):
        registry.create_project(login_task, project_id="alpha")

        assert await registry.run_project("alpha") == GraphStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_projects_are_isolated(self, settings, make_executor, store, login_task):
        def script(task_id: str, attempt: int) -> ExecutionOutcome:
            return ExecutionOutcome(False, "Build failed")

        failing = ProjectRegistry(make_executor(script), settings=settings, persistence=store)
        passing = ProjectRegistry(make_executor(), settings=settings, persistence=store)
        failing.create_project(login_task, project_id="bad")
        passing.create_project(login_task, project_id="good")

        statuses = await asyncio.gather(
            failing.run_project("bad"), passing.run_project("good")
        )

        assert statuses == [GraphStatus.FAILED, GraphStatus.COMPLETED]
        assert failing.get("bad").pool is not passing.get("good").pool


class TestControlRouting:

    @pytest.mark.asyncio
    async def test_start_pause_resume(self, settings, make_executor, login_task):
        executor = make_executor(delays={"T": 0.1})
        registry = ProjectRegistry(executor, settings=settings)
        registry.create_project(login_task, project_id="alpha")

        run = registry.start_project("alpha")
        assert registry.start_project("alpha") is run
        await asyncio.sleep(0.03)
        await registry.pause_project("alpha")
        assert await run == GraphStatus.PAUSED

        assert await registry.resume_project("alpha") == GraphStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_project(self, settings, make_executor, login_task):
        def script(task_id: str, attempt: int) -> ExecutionOutcome:
            if task_id == "T" and attempt == 1:
                return ExecutionOutcome(False, "Build failed")
            return ExecutionOutcome(True, "QUALITY_SCORE: 0.9")

        registry = ProjectRegistry(make_executor(script), settings=settings)
        registry.create_project(login_task, project_id="alpha")

        assert await registry.run_project("alpha") == GraphStatus.FAILED
        assert await registry.retry_project("alpha") == GraphStatus.COMPLETED


class TestListAndDelete:

    @pytest.mark.asyncio
    async def test_list_merges_persisted_projects(self, settings, executor, store, login_task):
        earlier = ProjectRegistry(executor, settings=settings, persistence=store)
        earlier.create_project(login_task, project_id="old")
        await earlier.run_project("old")

        registry = ProjectRegistry(executor, settings=settings, persistence=store)
        registry.create_project(login_task, project_id="new")

        listed = await registry.list_projects()

        assert [p["project_id"] for p in listed] == ["new", "old"]
        assert listed[0]["live"] is True
        assert listed[0]["status"] == "initialized"
        assert listed[1]["live"] is False
        assert listed[1]["status"] == "completed"
        assert listed[1]["latest_checkpoint"] == "final"

    @pytest.mark.asyncio
    async def test_delete_project(self, registry, store, login_task):
        registry.create_project(login_task, project_id="alpha")
        await registry.run_project("alpha")

        assert await registry.delete_project("alpha") is True
        assert await store.list_checkpoints("alpha") == []
        with pytest.raises(ProjectNotFoundError):
            registry.get("alpha")
        assert await registry.delete_project("alpha") is False

    @pytest.mark.asyncio
    async def test_delete_running_project(self, settings, make_executor, store, login_task):
        executor = make_executor(delays={"T": 1.0})
        registry = ProjectRegistry(executor, settings=settings, persistence=store)
        registry.create_project(login_task, project_id="alpha")

        run = registry.start_project("alpha")
        await asyncio.sleep(0.03)

        assert await registry.delete_project("alpha") is True
        assert run.done()
        assert await run == GraphStatus.PAUSED
        assert executor.running == 0
