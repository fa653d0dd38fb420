"""
GATEFLOW — Test Fixtures
========================
Shared pytest fixtures: fresh settings per test, stub executors and
ready-made task lists.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from gateflow.core.config import Settings
from gateflow.integrations.executor import ExecutionOutcome


# ── Settings ─────────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Ensure a fresh Settings instance for each test."""
    from gateflow.core.config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(monkeypatch) -> Settings:
    """Settings tuned for fast, deterministic runs."""
    monkeypatch.setenv("GATEFLOW_ENVIRONMENT", "development")
    monkeypatch.setenv("GATEFLOW_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("GATEFLOW_LOG_FORMAT", "console")
    return Settings(
        scheduler_poll_interval_seconds=0.01,
        retry_backoff_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        task_timeout_seconds=5.0,
        extended_task_timeout_seconds=5.0,
    )


# ── Executors ────────────────────────────────────────────────────────────


class ScriptedExecutor:
    """
    Executor whose outcome per task id comes from a callable.

    Records every (task_id, prompt) it was invoked with, in call order.
    """

    def __init__(
        self,
        script: Callable[[str, int], ExecutionOutcome] | None = None,
        delays: dict[str, float] | None = None,
    ) -> None:
        self._script = script or (
            lambda task_id, attempt: ExecutionOutcome(True, "QUALITY_SCORE: 0.9", 5)
        )
        self.delays = delays or {}
        self.calls: list[tuple[str, str]] = []
        self.running = 0
        self.max_running = 0

    def attempts(self, task_id: str) -> int:
        return sum(1 for tid, _ in self.calls if tid == task_id)

    def order(self) -> list[str]:
        return [tid for tid, _ in self.calls]

    async def execute(
        self, prompt: str, task_id: str, working_directory: str | None
    ) -> ExecutionOutcome:
        attempt = self.attempts(task_id) + 1
        self.calls.append((task_id, prompt))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.delays.get(task_id, 0))
            return self._script(task_id, attempt)
        finally:
            self.running -= 1


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def make_executor() -> type[ScriptedExecutor]:
    """The executor class, for tests that script outcomes."""
    return ScriptedExecutor


# ── Task lists ───────────────────────────────────────────────────────────


@pytest.fixture
def login_task() -> list[dict]:
    return [
        {
            "id": "T",
            "title": "Build login form",
            "description": "Email and password form with validation",
            "skills": ["react"],
        }
    ]


@pytest.fixture
def chain_tasks() -> list[dict]:
    return [
        {"id": "A", "title": "Build API client", "skills": ["python"]},
        {"id": "B", "title": "Build API service", "skills": ["python"], "dependencies": ["A"]},
        {"id": "C", "title": "Build API gateway", "skills": ["python"], "dependencies": ["B"]},
    ]
