"""
GATEFLOW — Worker Pool
======================
A project's private roster of workers with in-flight accounting.

Each scheduler owns one pool; pools are never shared between projects.
The run loop is the only caller, so no locking is needed.

Usage:
    pool = WorkerPool()
    pool.register_worker(profile)
    pool.acquire("react_frontend_specialist", "t1")
    # ... node runs ...
    pool.release("react_frontend_specialist", "t1")
"""

from __future__ import annotations

from collections.abc import Iterable

from gateflow.core.logging import get_logger
from gateflow.workers.profiles import WorkerProfile

logger = get_logger(__name__)


# ── Exceptions ──────────────────────────────────────────────────────────


class WorkerNotFoundError(Exception):
    """Raised when the requested worker is not in the pool."""

    def __init__(self, worker_id: str) -> None:
        self.worker_id = worker_id
        super().__init__(f"Worker '{worker_id}' is not in the pool.")


class WorkerCapacityError(Exception):
    """Raised when a worker is already running its maximum of nodes."""

    def __init__(self, worker_id: str, max_concurrent: int) -> None:
        self.worker_id = worker_id
        self.max_concurrent = max_concurrent
        super().__init__(
            f"Worker '{worker_id}' is at its concurrency limit ({max_concurrent})."
        )


class PoolCapacityError(Exception):
    """Raised when the pool is at maximum capacity."""

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        super().__init__(f"Worker pool is at maximum capacity ({max_size}).")


# ── Pool ────────────────────────────────────────────────────────────────

DEFAULT_MAX_POOL_SIZE = 50


class WorkerPool:
    """
    Bounded set of worker profiles.

    ``acquire``/``release`` track which nodes each worker is running so the
    matcher can see current workload.
    """

    def __init__(
        self,
        workers: Iterable[WorkerProfile] = (),
        max_pool_size: int = DEFAULT_MAX_POOL_SIZE,
    ) -> None:
        self._workers: dict[str, WorkerProfile] = {}
        self._in_flight: dict[str, set[str]] = {}
        self._max_pool_size = max_pool_size
        for worker in workers:
            self.register_worker(worker)

    @property
    def size(self) -> int:
        """Current number of workers in the pool."""
        return len(self._workers)

    @property
    def max_pool_size(self) -> int:
        return self._max_pool_size

    def register_worker(self, worker: WorkerProfile) -> None:
        """
        Add a worker to the pool.

        Raises ``PoolCapacityError`` if the pool is full.
        Raises ``ValueError`` if a worker with the same ID already exists.
        """
        if len(self._workers) >= self._max_pool_size:
            raise PoolCapacityError(self._max_pool_size)
        if worker.worker_id in self._workers:
            raise ValueError(
                f"Worker '{worker.worker_id}' is already registered in the pool."
            )
        self._workers[worker.worker_id] = worker
        self._in_flight[worker.worker_id] = set()
        logger.info(
            "pool.worker_registered",
            worker_id=worker.worker_id,
            specialization=worker.specialization,
            pool_size=len(self._workers),
        )

    def get_worker(self, worker_id: str) -> WorkerProfile:
        """
        Retrieve a worker by ID.

        Raises ``WorkerNotFoundError`` if not found.
        """
        worker = self._workers.get(worker_id)
        if worker is None:
            raise WorkerNotFoundError(worker_id)
        return worker

    def list_workers(self) -> list[WorkerProfile]:
        """Return all workers in the pool."""
        return list(self._workers.values())

    def in_flight(self, worker_id: str) -> int:
        if worker_id not in self._workers:
            raise WorkerNotFoundError(worker_id)
        return len(self._in_flight[worker_id])

    def workload(self) -> dict[str, int]:
        return {wid: len(nodes) for wid, nodes in self._in_flight.items()}

    def has_capacity(self, worker_id: str) -> bool:
        return self.in_flight(worker_id) < self.get_worker(worker_id).max_concurrent

    def acquire(self, worker_id: str, node_id: str) -> None:
        """
        Reserve a slot on ``worker_id`` for ``node_id``.

        Raises ``WorkerCapacityError`` if the worker is saturated.
        """
        worker = self.get_worker(worker_id)
        if not self.has_capacity(worker_id):
            raise WorkerCapacityError(worker_id, worker.max_concurrent)
        self._in_flight[worker_id].add(node_id)
        logger.debug("pool.worker_acquired", worker_id=worker_id, node_id=node_id)

    def release(self, worker_id: str, node_id: str) -> None:
        """
        Free the slot held for ``node_id``. Releasing a slot that is not
        held is a no-op.
        """
        self.get_worker(worker_id)
        self._in_flight[worker_id].discard(node_id)
        logger.debug("pool.worker_released", worker_id=worker_id, node_id=node_id)

    def release_all(self) -> None:
        for nodes in self._in_flight.values():
            nodes.clear()
