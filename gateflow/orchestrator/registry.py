"""
GATEFLOW — Project Registry
===========================
Holds one ExecutionScheduler per project and routes control calls to it.

Projects are fully isolated: each gets its own graph, worker pool, event
queue and checkpoint store. Persisted checkpoints are shared through the
configured persistence store, so ``list_projects`` also reports projects
that only exist on disk.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from gateflow.core.config import Settings, get_settings
from gateflow.core.exceptions import ProjectNotFoundError
from gateflow.core.logging import get_logger
from gateflow.integrations.executor import TaskExecutor
from gateflow.orchestrator.events import EventSink
from gateflow.orchestrator.graph_builder import GraphBuilder
from gateflow.orchestrator.models import TaskSpec
from gateflow.orchestrator.scheduler import ExecutionScheduler
from gateflow.orchestrator.state_machine import GraphStatus
from gateflow.storage.persistence import PersistenceStore
from gateflow.workers.pool_manager import WorkerPool
from gateflow.workers.profiles import WorkerProfile, default_profiles

logger = get_logger(__name__)


class ProjectRegistry:
    """Entry point for multi-project orchestration."""

    def __init__(
        self,
        executor: TaskExecutor,
        *,
        settings: Settings | None = None,
        persistence: PersistenceStore | None = None,
        sink: EventSink | None = None,
        worker_factory: Callable[[], Iterable[WorkerProfile]] = default_profiles,
    ) -> None:
        self._executor = executor
        self._settings = settings or get_settings()
        self._persistence = persistence
        self._sink = sink
        self._worker_factory = worker_factory
        self._builder = GraphBuilder(self._settings)
        self._projects: dict[str, ExecutionScheduler] = {}
        self._runs: dict[str, asyncio.Task[GraphStatus]] = {}

    def create_project(
        self,
        tasks: Iterable[TaskSpec | Mapping[str, Any]],
        project_id: str | None = None,
    ) -> ExecutionScheduler:
        """
        Build and register a project graph.

        Raises ``GraphConstructionError`` for invalid task lists and
        ``ValueError`` if ``project_id`` is already registered.
        """
        project_id = project_id or uuid.uuid4().hex
        if project_id in self._projects:
            raise ValueError(f"Project '{project_id}' is already registered.")
        graph, _ = self._builder.build(project_id, tasks)
        scheduler = ExecutionScheduler(
            graph,
            self._executor,
            workers=WorkerPool(self._worker_factory()),
            settings=self._settings,
            sink=self._sink,
            persistence=self._persistence,
        )
        self._projects[project_id] = scheduler
        logger.info(
            "registry.project_created",
            project_id=project_id,
            nodes=len(graph.nodes),
            edges=len(graph.edges),
        )
        return scheduler

    def get(self, project_id: str) -> ExecutionScheduler:
        scheduler = self._projects.get(project_id)
        if scheduler is None:
            raise ProjectNotFoundError(
                f"Project '{project_id}' is not registered.", project_id=project_id
            )
        return scheduler

    async def run_project(self, project_id: str) -> GraphStatus:
        """Run a project to completion, failure or pause."""
        return await self.get(project_id).run()

    def start_project(self, project_id: str) -> asyncio.Task[GraphStatus]:
        """Run a project in the background; returns the run task."""
        scheduler = self.get(project_id)
        existing = self._runs.get(project_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(scheduler.run(), name=f"gateflow:{project_id}")
        self._runs[project_id] = task
        return task

    async def pause_project(self, project_id: str, *, force: bool = False) -> None:
        await self.get(project_id).pause(force=force)

    def resume_project(self, project_id: str) -> asyncio.Task[GraphStatus]:
        """Resume a paused project and re-enter its run loop."""
        self.get(project_id).resume()
        return self.start_project(project_id)

    def retry_project(self, project_id: str) -> asyncio.Task[GraphStatus]:
        """Manually retry a failed project."""
        self.get(project_id).retry_failed()
        return self.start_project(project_id)

    async def list_projects(self) -> list[dict[str, Any]]:
        """Live projects first, then projects known only to persistence."""
        listed = [
            {
                "project_id": pid,
                "status": scheduler.status.value,
                "progress": scheduler.graph.state.progress,
                "live": True,
            }
            for pid, scheduler in sorted(self._projects.items())
        ]
        if self._persistence is not None:
            for summary in await self._persistence.list_projects():
                if summary.project_id in self._projects:
                    continue
                listed.append(
                    {
                        "project_id": summary.project_id,
                        "status": summary.status,
                        "progress": summary.progress,
                        "live": False,
                        "latest_checkpoint": summary.latest_checkpoint,
                    }
                )
        return listed

    async def delete_project(self, project_id: str) -> bool:
        """
        Stop and forget a project, removing its persisted checkpoints.

        Returns ``False`` if nothing was known about it.
        """
        scheduler = self._projects.pop(project_id, None)
        run = self._runs.pop(project_id, None)
        if scheduler is not None and scheduler.status == GraphStatus.EXECUTING:
            await scheduler.pause(force=True)
        if run is not None and not run.done():
            await run
        removed = 0
        if self._persistence is not None:
            removed = await self._persistence.delete_project(project_id)
        logger.info(
            "registry.project_deleted",
            project_id=project_id,
            persisted_checkpoints=removed,
        )
        return scheduler is not None or removed > 0
