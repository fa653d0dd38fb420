"""
GATEFLOW — Execution Scheduler
==============================
Drives one project graph from ``initialized`` to ``completed`` or ``failed``.

The run loop is the single writer of GraphState, the node-state map and the
Memory Bank. Executor calls run as separate asyncio tasks and hand their
results back through a queue; the loop applies every state change itself.

Loop pass:
1. Apply results that have arrived
2. Compute the ready set (dependencies completed, incoming edges pass,
   a capable worker has a free slot, parallelism not exceeded)
3. Dispatch it, or finish the graph when nothing is ready or running,
   or wait (bounded) for the next result

Unexpected faults inside a pass trigger checkpoint-based recovery; fatal
errors fail the graph with a single terminal event.

Usage:
    scheduler = ExecutionScheduler(graph, executor, workers=default_profiles())
    status = await scheduler.run()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import TypeAdapter

from gateflow.core.config import Settings, get_settings
from gateflow.core.exceptions import (
    ExecutionError,
    GateflowError,
    QualityGateFailure,
    RecoveryExhausted,
)
from gateflow.core.logging import bind_project, get_logger, unbind_project
from gateflow.integrations.executor import TaskExecutor, select_timeout
from gateflow.orchestrator.checkpoints import (
    EXECUTION_START,
    INITIALIZED,
    Checkpoint,
    CheckpointStore,
    ValidationReport,
    validate_state,
)
from gateflow.orchestrator.conditions import (
    ConditionalEdgeEvaluator,
    EdgeEvaluation,
    EvaluationContext,
)
from gateflow.orchestrator.events import EventEmitter, EventSink, EventType
from gateflow.orchestrator.guards import Guards, RetryLimitExceededError
from gateflow.orchestrator.models import (
    EXECUTION_HISTORY,
    FAILURE_PATTERNS,
    SUCCESS_PATTERNS,
    WORKER_PERFORMANCE,
    Edge,
    GraphState,
    MemoryBank,
    NodeResult,
    NodeState,
    TaskGraph,
    TaskNode,
)
from gateflow.orchestrator.prompts import build_prompt
from gateflow.orchestrator.quality import QualityVerifier, SignalQualityVerifier
from gateflow.orchestrator.recovery import RecoveryManager
from gateflow.orchestrator.remediation import (
    FailureAssessment,
    FailureSeverity,
    backoff_delay,
    build_remediation_plan,
    classify_failure,
    collect_issues,
)
from gateflow.orchestrator.state_machine import (
    GraphStateMachine,
    GraphStatus,
    NodeStateMachine,
    NodeStatus,
    NodeTransition,
)
from gateflow.storage.persistence import PersistenceStore
from gateflow.workers.matcher import CapabilityMatcher, MatchResult
from gateflow.workers.pool_manager import WorkerPool
from gateflow.workers.profiles import WorkerProfile, default_profiles

logger = get_logger(__name__)

FINAL_CHECKPOINT = "final"

_NODE_ADAPTER: TypeAdapter[TaskNode] = TypeAdapter(TaskNode)
_NODE_STATE_ADAPTER: TypeAdapter[NodeState] = TypeAdapter(NodeState)
_GRAPH_STATE_ADAPTER: TypeAdapter[GraphState] = TypeAdapter(GraphState)
_MEMORY_ADAPTER: TypeAdapter[MemoryBank] = TypeAdapter(MemoryBank)
_EDGE_ADAPTER: TypeAdapter[Edge] = TypeAdapter(Edge)


@dataclass(frozen=True)
class ReadyEntry:
    """A node cleared for dispatch in the current pass."""

    node_id: str
    worker: WorkerProfile
    match: MatchResult
    cyclical: tuple[tuple[Edge, EdgeEvaluation], ...] = ()


class ExecutionScheduler:
    """Run loop and control surface for one project."""

    def __init__(
        self,
        graph: TaskGraph,
        executor: TaskExecutor,
        *,
        workers: WorkerPool | Iterable[WorkerProfile] | None = None,
        settings: Settings | None = None,
        sink: EventSink | None = None,
        persistence: PersistenceStore | None = None,
        verifier: QualityVerifier | None = None,
        matcher: CapabilityMatcher | None = None,
        working_directory: str | None = None,
    ) -> None:
        self._graph = graph
        self._executor = executor
        self._settings = settings or get_settings()
        if isinstance(workers, WorkerPool):
            self._pool = workers
        else:
            self._pool = WorkerPool(default_profiles() if workers is None else workers)
        self._matcher = matcher or CapabilityMatcher()
        self._evaluator = ConditionalEdgeEvaluator()
        self._verifier = verifier or SignalQualityVerifier(
            default_success_score=self._settings.default_success_score
        )
        self._persistence = persistence
        self._working_directory = working_directory
        self._events = EventEmitter(
            sink,
            maxsize=self._settings.event_queue_size,
            drain_timeout=self._settings.event_drain_timeout_seconds,
        )
        self._checkpoints = CheckpointStore(
            graph, retention=self._settings.checkpoint_retention_count
        )
        self._recovery = RecoveryManager(graph, self._checkpoints)

        self._results: asyncio.Queue[NodeResult] = asyncio.Queue()
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._unpersisted: list[Checkpoint] = []
        self._stall_reasons: dict[str, str] = {}
        self._applied_since_snapshot = 0
        self._recoveries = 0
        self._order = {nid: i for i, nid in enumerate(graph.topological_order())}

        graph.state.max_parallelism = self._settings.max_parallelism
        if graph.state.status == GraphStatus.INITIALIZED:
            self._checkpoint(INITIALIZED)

    # ── Properties ──────────────────────────────────────────────────────

    @property
    def graph(self) -> TaskGraph:
        return self._graph

    @property
    def project_id(self) -> str:
        return self._graph.project_id

    @property
    def status(self) -> GraphStatus:
        return self._graph.state.status

    @property
    def events(self) -> EventEmitter:
        return self._events

    @property
    def checkpoints(self) -> CheckpointStore:
        return self._checkpoints

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    @property
    def is_running(self) -> bool:
        return bool(self._in_flight)

    # ── Run loop ────────────────────────────────────────────────────────

    async def run(self) -> GraphStatus:
        """
        Drive the graph until it completes, fails, or is paused.

        Raises ``SchedulingError`` or ``RecoveryExhausted`` after failing
        the graph when a fatal error occurs.
        """
        state = self._graph.state
        if state.status in (GraphStatus.COMPLETED, GraphStatus.FAILED):
            return state.status
        if state.status == GraphStatus.PAUSED:
            logger.info("scheduler.run_while_paused", project_id=self.project_id)
            return state.status

        bind_project(self.project_id)
        await self._events.start()
        try:
            if state.status == GraphStatus.INITIALIZED:
                self._set_graph_status(GraphStatus.EXECUTING, "run started")
                self._graph.state.started_at = time.time()
                self._checkpoint(EXECUTION_START)
            await self._loop()
        finally:
            await self._flush_persistence()
            await self._events.stop()
            unbind_project()
        return self._graph.state.status

    async def _loop(self) -> None:
        iteration = 0
        while True:
            status = self._graph.state.status
            if status in (GraphStatus.COMPLETED, GraphStatus.FAILED):
                return
            if status == GraphStatus.PAUSED and not self._in_flight:
                return
            try:
                progressed = await self._step()
                if progressed:
                    iteration += 1
                    Guards.check_iteration_ceiling(
                        iteration, self._settings.max_scheduler_iterations, self.project_id
                    )
            except GateflowError as exc:
                if exc.fatal:
                    await self._fail_terminal(exc)
                    raise
                await self._recover(exc)
            except Exception as exc:
                await self._recover(exc)

    async def _step(self) -> bool:
        progressed = False
        while not self._results.empty():
            self._apply_result(self._results.get_nowait())
            progressed = True

        if self._graph.state.status == GraphStatus.EXECUTING:
            ready = self.compute_ready_set()
            self._graph.state.available_nodes = [entry.node_id for entry in ready]
            if ready:
                for entry in ready:
                    self._dispatch(entry)
                progressed = True
            elif not self._in_flight:
                delay = self._backoff_remaining()
                if delay is not None:
                    await asyncio.sleep(min(delay, self._settings.scheduler_poll_interval_seconds))
                    return progressed
                await self._finalize()
                return True

        await self._flush_persistence()
        if not progressed and self._in_flight:
            try:
                result = await asyncio.wait_for(
                    self._results.get(),
                    timeout=self._settings.scheduler_poll_interval_seconds,
                )
            except TimeoutError:
                return False
            self._apply_result(result)
            progressed = True
        return progressed

    # ── Ready set ───────────────────────────────────────────────────────

    def compute_ready_set(self) -> list[ReadyEntry]:
        """
        Pending nodes eligible for dispatch right now, highest priority
        first, capped by the free parallelism budget. Pure with respect to
        graph state.
        """
        graph = self._graph
        capacity = graph.state.max_parallelism - len(graph.state.current_nodes)
        if capacity <= 0:
            return []

        now = time.time()
        tentative = self._pool.workload()
        ctx = self._evaluation_context(tentative)
        candidates = sorted(
            graph.nodes_with_status(NodeStatus.PENDING),
            key=lambda nid: (-graph.nodes[nid].priority.rank, self._order.get(nid, 0)),
        )
        ready: list[ReadyEntry] = []
        for node_id in candidates:
            st = graph.node_states[node_id]
            if st.not_before is not None and st.not_before > now:
                self._stall_reasons[node_id] = "retry_backoff"
                continue
            passed, cyclical = self._incoming_edges_pass(node_id, ctx)
            if not passed:
                continue
            match = self._match(graph.nodes[node_id], tentative)
            if match.best is None:
                self._stall_reasons[node_id] = "no_capable_worker"
                continue
            tentative[match.best.worker_id] = tentative.get(match.best.worker_id, 0) + 1
            ready.append(ReadyEntry(node_id, match.best, match, cyclical))
            self._stall_reasons.pop(node_id, None)
            if len(ready) >= capacity:
                break
        return ready

    def _incoming_edges_pass(
        self, node_id: str, ctx: EvaluationContext
    ) -> tuple[bool, tuple[tuple[Edge, EdgeEvaluation], ...]]:
        graph = self._graph
        cyclical: list[tuple[Edge, EdgeEvaluation]] = []
        for edge in graph.incoming(node_id):
            # A feedback edge only gates once its source has completed
            if edge.is_feedback and graph.node_states[edge.source].status != NodeStatus.COMPLETED:
                continue
            evaluation = self._evaluator.evaluate(edge, ctx, dry_run=True)
            if not evaluation.passed:
                self._stall_reasons[node_id] = f"{edge.id}: {evaluation.reason}"
                return False, ()
            if edge.is_cyclical:
                cyclical.append((edge, evaluation))
        return True, tuple(cyclical)

    def _evaluation_context(self, tentative: dict[str, int]) -> EvaluationContext:
        def worker_available(node: TaskNode) -> bool:
            return self._match(node, tentative).best is not None

        return EvaluationContext(
            graph=self._graph,
            quality_threshold=self._settings.quality_threshold,
            timeout_fails_quality_gate=self._settings.timeout_fails_quality_gate,
            general_improvement_cap=self._settings.general_improvement_cap,
            worker_available=worker_available,
        )

    def _match(self, node: TaskNode, workload: dict[str, int]) -> MatchResult:
        available = [
            w for w in self._pool.list_workers()
            if workload.get(w.worker_id, 0) < w.max_concurrent
        ]
        return self._matcher.find_best(node, available, workload)

    def _backoff_remaining(self) -> float | None:
        now = time.time()
        waits = [
            st.not_before - now
            for st in self._graph.node_states.values()
            if st.status == NodeStatus.PENDING
            and st.not_before is not None
            and st.not_before > now
        ]
        return min(waits) if waits else None

    # ── Dispatch ────────────────────────────────────────────────────────

    def _dispatch(self, entry: ReadyEntry) -> None:
        graph = self._graph
        node = graph.nodes[entry.node_id]
        st = graph.node_states[entry.node_id]
        worker = entry.worker

        if entry.cyclical:
            ctx = self._evaluation_context(self._pool.workload())
            for edge, evaluation in entry.cyclical:
                self._evaluator.record_traversal(edge, evaluation, ctx)
                self._events.emit(
                    EventType.CYCLE_ITERATION,
                    {
                        "project_id": self.project_id,
                        "edge_id": edge.id,
                        "iteration": edge.current_iteration,
                        "max_iterations": edge.max_iterations,
                    },
                )

        self._set_node_status(node.id, NodeStatus.RUNNING, NodeTransition.DISPATCH)
        st.start_time = time.time()
        st.end_time = None
        st.not_before = None
        st.assigned_worker_id = worker.worker_id
        graph.state.current_nodes.add(node.id)
        self._pool.acquire(worker.worker_id, node.id)
        Guards.check_parallelism(graph.state)

        prompt = build_prompt(graph, node, worker)
        timeout = select_timeout(node, self._settings, worker)
        self._in_flight[node.id] = asyncio.create_task(
            self._invoke(node.id, worker.worker_id, prompt, timeout),
            name=f"gateflow:{self.project_id}:{node.id}",
        )
        logger.info(
            "scheduler.node_dispatched",
            project_id=self.project_id,
            node_id=node.id,
            worker_id=worker.worker_id,
            justification=entry.match.justification,
            timeout_seconds=timeout,
        )

    async def _invoke(
        self, node_id: str, worker_id: str, prompt: str, timeout: float
    ) -> None:
        started = time.monotonic()
        try:
            outcome = await asyncio.wait_for(
                self._executor.execute(prompt, node_id, self._working_directory),
                timeout=timeout,
            )
        except TimeoutError:
            result = NodeResult(
                node_id=node_id,
                success=False,
                duration_ms=int((time.monotonic() - started) * 1000),
                timed_out=True,
                error=f"Executor timed out after {timeout:.0f}s",
                worker_id=worker_id,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            result = NodeResult(
                node_id=node_id,
                success=False,
                output=message,
                duration_ms=int((time.monotonic() - started) * 1000),
                report=self._verifier.verify(success=False, output=message),
                error=message,
                worker_id=worker_id,
            )
        else:
            result = NodeResult(
                node_id=node_id,
                success=outcome.success,
                output=outcome.output,
                duration_ms=outcome.duration_ms
                or int((time.monotonic() - started) * 1000),
                report=self._verifier.verify(success=outcome.success, output=outcome.output),
                error=outcome.error,
                worker_id=worker_id,
            )
        self._results.put_nowait(result)

    # ── Result handling ─────────────────────────────────────────────────

    def _apply_result(self, result: NodeResult) -> None:
        graph = self._graph
        node_id = result.node_id
        self._in_flight.pop(node_id, None)
        st = graph.node_states.get(node_id)
        if st is None or st.status != NodeStatus.RUNNING:
            logger.info("scheduler.stale_result_dropped", node_id=node_id)
            return

        if st.assigned_worker_id is not None:
            self._pool.release(st.assigned_worker_id, node_id)
        graph.state.current_nodes.discard(node_id)
        st.end_time = result.finished_at
        st.duration_ms = result.duration_ms
        if st.last_result is not None and st.last_result.report is not None:
            st.previous_coverage = st.last_result.report.coverage
        st.previous_quality_score = st.quality_score
        st.last_result = result

        if result.timed_out:
            self._complete_with_warning(node_id, result)
        else:
            st.quality_score = result.quality_score
            passed = (
                result.success
                and st.quality_score is not None
                and st.quality_score >= self._settings.quality_threshold
            )
            self._record_execution(node_id, result, passed)
            if passed:
                self._complete(node_id, result)
            else:
                self._handle_failure(node_id, result)

        graph.update_progress()
        Guards.check_all(graph.state)
        self._applied_since_snapshot += 1
        if self._applied_since_snapshot >= self._settings.auto_checkpoint_interval:
            self._checkpoint("periodic", auto=True)
            self._applied_since_snapshot = 0

    def _record_execution(self, node_id: str, result: NodeResult, passed: bool) -> None:
        memory = self._graph.memory
        st = self._graph.node_states[node_id]
        memory.append(
            EXECUTION_HISTORY,
            {
                "node_id": node_id,
                "worker_id": result.worker_id,
                "success": result.success,
                "passed": passed,
                "quality_score": result.quality_score,
                "duration_ms": result.duration_ms,
                "timed_out": result.timed_out,
                "attempt": st.retry_count + 1,
                "finished_at": result.finished_at,
            },
        )
        if result.worker_id is not None:
            memory.append(
                WORKER_PERFORMANCE,
                {
                    "worker_id": result.worker_id,
                    "node_id": node_id,
                    "success": passed,
                    "quality_score": result.quality_score,
                    "duration_ms": result.duration_ms,
                },
            )

    def _complete(self, node_id: str, result: NodeResult) -> None:
        graph = self._graph
        node = graph.nodes[node_id]
        st = graph.node_states[node_id]
        self._set_node_status(node_id, NodeStatus.COMPLETED, NodeTransition.SUCCEED)
        st.warning = None
        st.remediation = None
        graph.state.completed_nodes.add(node_id)
        graph.memory.append(
            SUCCESS_PATTERNS,
            {
                "node_id": node_id,
                "type": node.type.value,
                "skills": sorted(node.required_skills),
                "worker_id": result.worker_id,
                "quality_score": result.quality_score,
                "attempts": st.retry_count + 1,
            },
        )
        logger.info(
            "scheduler.node_completed",
            project_id=self.project_id,
            node_id=node_id,
            quality_score=result.quality_score,
            duration_ms=result.duration_ms,
        )

    def _complete_with_warning(self, node_id: str, result: NodeResult) -> None:
        graph = self._graph
        st = graph.node_states[node_id]
        st.quality_score = None
        st.warning = result.error or "timeout"
        self._record_execution(node_id, result, passed=False)
        self._set_node_status(node_id, NodeStatus.COMPLETED, NodeTransition.TIMEOUT)
        graph.state.completed_nodes.add(node_id)
        logger.warning(
            "scheduler.node_completed_with_warning",
            project_id=self.project_id,
            node_id=node_id,
            warning=st.warning,
        )
        self._events.emit(
            EventType.TIMEOUT_WARNING,
            {
                "project_id": self.project_id,
                "node_id": node_id,
                "warning": st.warning,
                "fails_quality_gate": self._settings.timeout_fails_quality_gate,
            },
        )

    def _handle_failure(self, node_id: str, result: NodeResult) -> None:
        graph = self._graph
        node = graph.nodes[node_id]
        st = graph.node_states[node_id]
        self._checkpoint("pre_error", auto=True)

        error = self._error_for(node, result)
        self._set_node_status(node_id, NodeStatus.FAILED, NodeTransition.FAIL)
        graph.state.failed_nodes.add(node_id)
        graph.state.error_count += 1
        graph.state.last_error = str(error)
        st.error_history.append(str(error))

        assessment = classify_failure(
            result,
            critical_cutoff=self._settings.critical_score_cutoff,
            moderate_cutoff=self._settings.moderate_score_cutoff,
        )
        graph.memory.append(
            FAILURE_PATTERNS,
            {
                "node_id": node_id,
                "kind": error.kind,
                "severity": assessment.severity.value,
                "signals": list(assessment.signals),
                "issues": collect_issues(result),
            },
        )
        logger.warning(
            "scheduler.node_failed",
            project_id=self.project_id,
            node_id=node_id,
            error_code=error.error_code,
            severity=assessment.severity.value,
            signals=list(assessment.signals),
        )

        if assessment.severity == FailureSeverity.CRITICAL:
            self._block(node_id, "critical failure", result, assessment, error)
        elif node.is_checkpoint and node.original_task_id is not None:
            self._rework_original(node, node.original_task_id, result, assessment, error)
        else:
            try:
                Guards.check_retry_limit(node_id, st.retry_count, node.max_retries)
            except RetryLimitExceededError as exc:
                self._block(node_id, str(exc), result, assessment, error)
            else:
                self._requeue(node, result, assessment, error)

    def _error_for(self, node: TaskNode, result: NodeResult) -> GateflowError:
        if not result.success:
            return ExecutionError(
                f"Execution of '{node.id}' failed: {result.error or 'executor reported failure'}",
                project_id=self.project_id,
                node_id=node.id,
                worker_id=result.worker_id,
            )
        return QualityGateFailure(
            f"'{node.id}' scored {result.quality_score} below "
            f"{self._settings.quality_threshold}",
            score=result.quality_score,
            threshold=self._settings.quality_threshold,
            project_id=self.project_id,
            node_id=node.id,
            worker_id=result.worker_id,
        )

    def _requeue(
        self,
        node: TaskNode,
        result: NodeResult,
        assessment: FailureAssessment,
        error: GateflowError,
    ) -> None:
        graph = self._graph
        st = graph.node_states[node.id]
        st.retry_count += 1
        graph.state.retry_count += 1
        plan = build_remediation_plan(result, assessment, attempt=st.retry_count)
        st.remediation = plan.to_dict()
        self._set_node_status(node.id, NodeStatus.RETRY, NodeTransition.SCHEDULE_RETRY)
        self._set_node_status(node.id, NodeStatus.PENDING, NodeTransition.REQUEUE)
        graph.state.failed_nodes.discard(node.id)

        payload: dict[str, Any] = {
            "project_id": self.project_id,
            "node_id": node.id,
            "kind": error.kind,
            "severity": assessment.severity.value,
            "attempt": st.retry_count,
            "max_retries": node.max_retries,
            "plan": st.remediation,
        }
        if assessment.severity == FailureSeverity.MINOR:
            delay = backoff_delay(
                st.retry_count,
                self._settings.retry_backoff_seconds,
                self._settings.retry_backoff_max_seconds,
            )
            st.not_before = time.time() + delay if delay else None
            payload["delay_seconds"] = delay
            self._events.emit(EventType.RETRY_SCHEDULED, payload)
            logger.info(
                "scheduler.retry_scheduled",
                node_id=node.id,
                attempt=st.retry_count,
                delay_seconds=delay,
            )
        else:
            st.not_before = None
            self._events.emit(EventType.REWORK_ENQUEUED, payload)
            logger.info("scheduler.rework_enqueued", node_id=node.id, attempt=st.retry_count)

    def _rework_original(
        self,
        checkpoint_node: TaskNode,
        original_id: str,
        result: NodeResult,
        assessment: FailureAssessment,
        error: GateflowError,
    ) -> None:
        """Roll the verified task and its checkpoint pair back to pending."""
        graph = self._graph
        original = graph.nodes[original_id]
        original_state = graph.node_states[original_id]
        try:
            Guards.check_retry_limit(original_id, original_state.retry_count, original.max_retries)
        except RetryLimitExceededError as exc:
            self._block(checkpoint_node.id, str(exc), result, assessment, error)
            return

        original_state.retry_count += 1
        graph.state.retry_count += 1
        plan = build_remediation_plan(result, assessment, attempt=original_state.retry_count)
        original_state.remediation = plan.to_dict()
        original_state.error_history.append(f"{checkpoint_node.id}: {error}")

        pair = graph.checkpoint_map[original_id]
        for node_id in (original_id, pair.code_review_node_id, pair.qa_node_id):
            st = graph.node_states[node_id]
            if node_id == checkpoint_node.id:
                self._set_node_status(node_id, NodeStatus.RETRY, NodeTransition.SCHEDULE_RETRY)
                self._set_node_status(node_id, NodeStatus.PENDING, NodeTransition.REWORK)
                graph.state.failed_nodes.discard(node_id)
            elif st.status == NodeStatus.COMPLETED:
                self._set_node_status(node_id, NodeStatus.PENDING, NodeTransition.REWORK)
                graph.state.completed_nodes.discard(node_id)
            st.warning = None
            st.not_before = None

        self._events.emit(
            EventType.REWORK_ENQUEUED,
            {
                "project_id": self.project_id,
                "node_id": original_id,
                "triggered_by": checkpoint_node.id,
                "kind": error.kind,
                "severity": assessment.severity.value,
                "attempt": original_state.retry_count,
                "max_retries": original.max_retries,
                "plan": original_state.remediation,
            },
        )
        logger.info(
            "scheduler.rework_enqueued",
            node_id=original_id,
            triggered_by=checkpoint_node.id,
            attempt=original_state.retry_count,
        )

    def _block(
        self,
        node_id: str,
        reason: str,
        result: NodeResult,
        assessment: FailureAssessment,
        error: GateflowError,
    ) -> None:
        st = self._graph.node_states[node_id]
        self._set_node_status(node_id, NodeStatus.BLOCKED, NodeTransition.BLOCK)
        plan = build_remediation_plan(result, assessment, attempt=st.retry_count + 1)
        st.remediation = plan.to_dict()
        self._events.emit(
            EventType.MANUAL_INTERVENTION,
            {
                "project_id": self.project_id,
                "node_id": node_id,
                "reason": reason,
                "kind": error.kind,
                "severity": assessment.severity.value,
                "signals": list(assessment.signals),
                "plan": st.remediation,
                "dependents": self._graph.dependents_of(node_id),
            },
        )
        logger.error(
            "scheduler.manual_intervention_required",
            project_id=self.project_id,
            node_id=node_id,
            reason=reason,
            severity=assessment.severity.value,
        )

    # ── Terminal states ─────────────────────────────────────────────────

    async def _finalize(self) -> None:
        graph = self._graph
        incomplete = [
            nid for nid, st in graph.node_states.items() if st.status != NodeStatus.COMPLETED
        ]
        graph.state.finished_at = time.time()
        graph.state.available_nodes = []
        if not incomplete:
            self._set_graph_status(GraphStatus.COMPLETED, "all nodes completed")
            self._events.emit(
                EventType.GRAPH_TERMINAL,
                {"project_id": self.project_id, "status": GraphStatus.COMPLETED.value},
            )
            logger.info("scheduler.graph_completed", project_id=self.project_id)
        else:
            blocked = graph.nodes_with_status(NodeStatus.BLOCKED)
            reason = (
                f"{len(incomplete)} node(s) cannot complete; "
                f"blocked: {blocked or 'none'}; "
                + ", ".join(
                    f"{nid} ({self._stall_reasons.get(nid, 'waiting on dependencies')})"
                    for nid in incomplete
                    if nid not in blocked
                )
            ).rstrip("; ")
            graph.state.last_error = reason
            self._set_graph_status(GraphStatus.FAILED, reason)
            self._events.emit(
                EventType.GRAPH_TERMINAL,
                {
                    "project_id": self.project_id,
                    "status": GraphStatus.FAILED.value,
                    "kind": "BlockedNodes" if blocked else "StalledGraph",
                    "reason": reason,
                },
            )
            logger.error("scheduler.graph_failed", project_id=self.project_id, reason=reason)
        self._checkpoint(FINAL_CHECKPOINT)

    async def _fail_terminal(self, exc: GateflowError) -> None:
        await self._cancel_in_flight()
        graph = self._graph
        graph.state.last_error = str(exc)
        graph.state.finished_at = time.time()
        if graph.state.status != GraphStatus.FAILED:
            if GraphStatus.FAILED in GraphStateMachine.get_allowed_transitions(graph.state.status):
                self._set_graph_status(GraphStatus.FAILED, str(exc))
            else:
                graph.state.status = GraphStatus.FAILED
        self._events.emit(
            EventType.GRAPH_TERMINAL,
            {
                "project_id": self.project_id,
                "status": GraphStatus.FAILED.value,
                "kind": exc.kind,
                "error_code": exc.error_code,
                "reason": str(exc),
            },
        )
        logger.error(
            "scheduler.fatal_error",
            project_id=self.project_id,
            kind=exc.kind,
            error=str(exc),
        )

    # ── Recovery ────────────────────────────────────────────────────────

    async def _recover(self, exc: Exception) -> None:
        logger.exception(
            "scheduler.unrecoverable_error",
            project_id=self.project_id,
            error=str(exc),
        )
        self._recoveries += 1
        if self._recoveries > self._settings.max_recovery_attempts:
            exhausted = RecoveryExhausted(
                f"Recovery attempted {self._recoveries - 1} time(s); last error: {exc}",
                project_id=self.project_id,
            )
            await self._fail_terminal(exhausted)
            raise exhausted from exc

        self._checkpoint("pre_error", auto=True)
        await self._cancel_in_flight()
        try:
            outcome = self._recovery.recover(str(exc))
        except RecoveryExhausted as exhausted:
            await self._fail_terminal(exhausted)
            raise

        self._pool.release_all()
        self._results = asyncio.Queue()
        if self._graph.state.status == GraphStatus.INITIALIZED:
            self._set_graph_status(GraphStatus.EXECUTING, "resumed after recovery")
            self._graph.state.started_at = time.time()
        self._events.emit(
            EventType.RECOVERY_ATTEMPT,
            {
                "project_id": self.project_id,
                "strategy": outcome.strategy.value,
                "reset_nodes": list(outcome.reset_nodes),
                "failed_strategies": list(outcome.attempted),
                "error": str(exc),
            },
        )

    async def _cancel_in_flight(self) -> list[str]:
        """Cancel every executor call and return its node to pending."""
        if not self._in_flight:
            return []
        tasks = dict(self._in_flight)
        self._in_flight.clear()
        for task in tasks.values():
            task.cancel()
        await asyncio.gather(*tasks.values(), return_exceptions=True)

        graph = self._graph
        for node_id in tasks:
            st = graph.node_states[node_id]
            if st.status == NodeStatus.RUNNING:
                self._set_node_status(node_id, NodeStatus.PENDING, NodeTransition.CANCEL)
            if st.assigned_worker_id is not None:
                self._pool.release(st.assigned_worker_id, node_id)
            st.assigned_worker_id = None
            graph.state.current_nodes.discard(node_id)
        logger.info("scheduler.in_flight_cancelled", nodes=sorted(tasks))
        return list(tasks)

    # ── Control surface ─────────────────────────────────────────────────

    async def pause(self, *, force: bool = False) -> None:
        """
        Stop new dispatches. In-flight calls finish normally unless
        ``force`` is set, in which case they are cancelled and their nodes
        return to pending.
        """
        self._set_graph_status(GraphStatus.PAUSED, "paused by caller")
        if force:
            await self._cancel_in_flight()

    def resume(self) -> None:
        """Re-enable dispatch; call ``run()`` to re-enter the loop."""
        self._set_graph_status(GraphStatus.EXECUTING, "resumed by caller")

    def retry_failed(self) -> list[str]:
        """
        Manual retry of a failed graph: blocked, failed and
        completed-with-warning nodes go back to pending with fresh retries.
        """
        graph = self._graph
        self._set_graph_status(GraphStatus.EXECUTING, "manual retry")
        reset: list[str] = []
        for node_id, st in graph.node_states.items():
            if st.status == NodeStatus.BLOCKED:
                self._set_node_status(node_id, NodeStatus.PENDING, NodeTransition.MANUAL_RETRY)
            elif st.status == NodeStatus.FAILED:
                self._set_node_status(node_id, NodeStatus.RETRY, NodeTransition.MANUAL_RETRY)
                self._set_node_status(node_id, NodeStatus.PENDING, NodeTransition.MANUAL_RETRY)
            elif st.status == NodeStatus.COMPLETED and st.warning is not None:
                self._set_node_status(node_id, NodeStatus.PENDING, NodeTransition.MANUAL_RETRY)
                graph.state.completed_nodes.discard(node_id)
                st.warning = None
            else:
                continue
            st.retry_count = 0
            st.not_before = None
            reset.append(node_id)
        graph.state.failed_nodes.clear()
        graph.state.last_error = None
        graph.state.finished_at = None
        graph.update_progress()
        self._recoveries = 0
        logger.info("scheduler.manual_retry", project_id=self.project_id, reset_nodes=reset)
        return reset

    async def create_checkpoint(self, name: str) -> Checkpoint:
        checkpoint = self._checkpoint(name)
        await self._flush_persistence()
        return checkpoint

    async def restore_checkpoint(self, name: str) -> Checkpoint:
        """
        Restore a named checkpoint, loading it from the persistence store
        when it is not held in process.

        Raises ``CheckpointError`` if it is missing or invalid.
        """
        if self._checkpoints.get(name) is None and self._persistence is not None:
            payload = await self._persistence.load_checkpoint(self.project_id, name)
            if payload is not None:
                self._checkpoints.add(Checkpoint.from_payload(payload))
        await self._cancel_in_flight()
        checkpoint = self._checkpoints.restore(name)
        self._pool.release_all()
        for st in self._graph.node_states.values():
            if st.status == NodeStatus.RUNNING:
                st.status = NodeStatus.PENDING
                st.assigned_worker_id = None
        self._graph.state.current_nodes.clear()
        self._events.emit(
            EventType.CHECKPOINT_RESTORED,
            {"project_id": self.project_id, "name": name, "version": checkpoint.version},
        )
        return checkpoint

    async def reset(self) -> GraphStatus:
        """Return the project to its ``initialized`` checkpoint."""
        await self.restore_checkpoint(INITIALIZED)
        self._recoveries = 0
        self._stall_reasons.clear()
        return self._graph.state.status

    def detect_cycles(self) -> list[str]:
        return [cycle.describe() for cycle in self._graph.cycles]

    def get_status(self) -> dict[str, Any]:
        graph = self._graph
        state = graph.state
        return {
            "project_id": self.project_id,
            "status": state.status.value,
            "progress": state.progress,
            "version": state.version,
            "current_nodes": sorted(state.current_nodes),
            "completed_nodes": sorted(state.completed_nodes),
            "failed_nodes": sorted(state.failed_nodes),
            "available_nodes": list(state.available_nodes),
            "error_count": state.error_count,
            "retry_count": state.retry_count,
            "last_error": state.last_error,
            "statistics": graph.statistics(),
            "workload": self._pool.workload(),
            "checkpoints": [c.name for c in self._checkpoints.list_checkpoints()],
            "events_dropped": self._events.dropped,
            "events_undelivered": self._events.undelivered,
        }

    def export_graph(self) -> dict[str, Any]:
        """JSON-compatible dump of definitions, edges and live state."""
        graph = self._graph
        return {
            "project_id": self.project_id,
            "nodes": [
                {
                    **_NODE_ADAPTER.dump_python(node, mode="json"),
                    "state": _NODE_STATE_ADAPTER.dump_python(
                        graph.node_states[node_id], mode="json"
                    ),
                }
                for node_id, node in graph.nodes.items()
            ],
            "edges": [_EDGE_ADAPTER.dump_python(e, mode="json") for e in graph.edges],
            "state": _GRAPH_STATE_ADAPTER.dump_python(graph.state, mode="json"),
            "memory": _MEMORY_ADAPTER.dump_python(graph.memory, mode="json"),
            "checkpoint_map": {
                task_id: {"code_review": pair.code_review_node_id, "qa": pair.qa_node_id}
                for task_id, pair in graph.checkpoint_map.items()
            },
            "cycles": self.detect_cycles(),
        }

    def validate_system(self) -> ValidationReport:
        """Structural self-check of the live graph."""
        graph = self._graph
        report = validate_state(graph.state, graph.node_states, graph.memory, set(graph.nodes))
        errors = list(report.errors)
        for edge in graph.edges:
            if edge.source not in graph.nodes or edge.target not in graph.nodes:
                errors.append(f"edge '{edge.id}' has a dangling endpoint")
            if edge.is_cyclical and edge.current_iteration > edge.max_iterations:
                errors.append(f"edge '{edge.id}' exceeded its iteration bound")
        if len(graph.topological_order()) != len(graph.nodes):
            errors.append("non-cyclical edges contain a cycle")
        running = set(graph.nodes_with_status(NodeStatus.RUNNING))
        if running != graph.state.current_nodes:
            errors.append("running nodes and current nodes disagree")
        return ValidationReport(not errors, tuple(errors))

    # ── Internals ───────────────────────────────────────────────────────

    def _set_graph_status(self, target: GraphStatus, reason: str) -> None:
        current = self._graph.state.status
        GraphStateMachine.validate_transition(current, target)
        self._graph.state.status = target
        self._events.emit(
            EventType.GRAPH_TRANSITION,
            {
                "project_id": self.project_id,
                "from": current.value,
                "to": target.value,
                "reason": reason,
            },
        )
        logger.info(
            "scheduler.graph_transition",
            project_id=self.project_id,
            from_status=current.value,
            to_status=target.value,
            reason=reason,
        )

    def _set_node_status(
        self, node_id: str, target: NodeStatus, transition: NodeTransition
    ) -> None:
        st = self._graph.node_states[node_id]
        NodeStateMachine.validate_transition(st.status, target)
        previous = st.status
        st.status = target
        self._events.emit(
            EventType.NODE_TRANSITION,
            {
                "project_id": self.project_id,
                "node_id": node_id,
                "from": previous.value,
                "to": target.value,
                "transition": transition.value,
            },
        )

    def _checkpoint(self, name: str, *, auto: bool = False) -> Checkpoint:
        checkpoint = self._checkpoints.create(name, auto=auto)
        if not auto:
            self._unpersisted.append(checkpoint)
        self._events.emit(
            EventType.CHECKPOINT_CREATED,
            {
                "project_id": self.project_id,
                "name": name,
                "version": checkpoint.version,
                "auto": auto,
            },
        )
        return checkpoint

    async def _flush_persistence(self) -> None:
        if self._persistence is None:
            self._unpersisted.clear()
            return
        pending, self._unpersisted = self._unpersisted, []
        for checkpoint in pending:
            try:
                await self._persistence.save_checkpoint(
                    self.project_id, checkpoint.name, checkpoint.to_payload()
                )
            except Exception as exc:
                logger.warning(
                    "checkpoint.persist_failed",
                    project_id=self.project_id,
                    name=checkpoint.name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
