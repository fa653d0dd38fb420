"""
GATEFLOW — Persistence Store
============================
Durable home for named checkpoints, keyed by (project id, checkpoint name).

Two implementations share the ``PersistenceStore`` protocol:

- ``InMemoryPersistenceStore``: process-local, lock-protected dict
- ``SQLPersistenceStore``: async SQLAlchemy, one row per checkpoint; every
  call runs in a single transaction so a save either lands completely or
  leaves the prior version in place

Usage:
    store = create_persistence_store(get_settings())
    await store.init()
    await store.save_checkpoint("proj-1", "execution_start", payload)
"""

from __future__ import annotations

import copy
import json
import threading
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import JSON, DateTime, Integer, String, UniqueConstraint, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from gateflow.core.config import Settings
from gateflow.core.exceptions import PersistenceError
from gateflow.core.logging import get_logger

logger = get_logger(__name__)

MEMORY_URL = "memory://"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ProjectSummary:
    project_id: str
    checkpoint_count: int
    latest_checkpoint: str | None
    latest_version: int
    status: str | None
    progress: float | None
    updated_at: datetime | None


class PersistenceStore(Protocol):
    async def init(self) -> None: ...

    async def close(self) -> None: ...

    async def save_checkpoint(
        self, project_id: str, name: str, snapshot: dict[str, Any]
    ) -> None: ...

    async def load_checkpoint(self, project_id: str, name: str) -> dict[str, Any] | None: ...

    async def list_checkpoints(self, project_id: str) -> list[str]: ...

    async def list_projects(self) -> list[ProjectSummary]: ...

    async def delete_project(self, project_id: str) -> int: ...


def _summary(
    project_id: str, rows: list[tuple[str, int, dict[str, Any], datetime]]
) -> ProjectSummary:
    """Summarise one project's (name, version, payload, updated_at) rows."""
    name, version, payload, updated = max(rows, key=lambda r: r[1])
    state = payload.get("graph_state") or {}
    return ProjectSummary(
        project_id=project_id,
        checkpoint_count=len(rows),
        latest_checkpoint=name,
        latest_version=version,
        status=state.get("status"),
        progress=state.get("progress"),
        updated_at=updated,
    )


# ── In-Memory Backend ───────────────────────────────────────────────────


class InMemoryPersistenceStore:
    """
    Thread-safe, process-local store.

    Snapshots are stored as JSON text so callers can never mutate a stored
    version through a shared reference.
    """

    def __init__(self) -> None:
        # project_id → name → (version, json text, updated_at)
        self._data: dict[str, dict[str, tuple[int, str, datetime]]] = {}
        self._lock = threading.Lock()

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def save_checkpoint(
        self, project_id: str, name: str, snapshot: dict[str, Any]
    ) -> None:
        try:
            raw = json.dumps(snapshot)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(
                f"Snapshot '{name}' is not serialisable: {exc}", project_id=project_id
            ) from exc
        version = int(snapshot.get("version", 0))
        with self._lock:
            self._data.setdefault(project_id, {})[name] = (version, raw, _utcnow())

    async def load_checkpoint(self, project_id: str, name: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._data.get(project_id, {}).get(name)
        return None if entry is None else json.loads(entry[1])

    async def list_checkpoints(self, project_id: str) -> list[str]:
        with self._lock:
            entries = dict(self._data.get(project_id, {}))
        return sorted(entries, key=lambda n: entries[n][0])

    async def list_projects(self) -> list[ProjectSummary]:
        with self._lock:
            data = copy.deepcopy(self._data)
        return [
            _summary(
                pid,
                [(n, v, json.loads(raw), ts) for n, (v, raw, ts) in entries.items()],
            )
            for pid, entries in sorted(data.items())
            if entries
        ]

    async def delete_project(self, project_id: str) -> int:
        with self._lock:
            removed = self._data.pop(project_id, {})
        return len(removed)


# ── SQLAlchemy Backend ──────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Declarative base for persistence tables."""
    pass


class CheckpointRecord(Base):
    """One persisted checkpoint; (project_id, name) is unique."""

    __tablename__ = "checkpoint_records"
    __table_args__ = (
        UniqueConstraint("project_id", "name", name="uq_checkpoint_project_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<CheckpointRecord project={self.project_id} "
            f"name={self.name} v{self.version}>"
        )


class SQLPersistenceStore:
    """Async SQLAlchemy store. Call ``init()`` before use."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self._url = url
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        """Create the engine, session factory and tables."""
        self._engine = create_async_engine(self._url, echo=self._echo)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("persistence.initialized", backend="sql")

    async def close(self) -> None:
        """Dispose the engine and its connection pool."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Provide a transactional async session.

        Commits on clean exit, rolls back on exception.
        """
        if self._session_factory is None:
            raise PersistenceError("Persistence store not initialized. Call init() first.")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def save_checkpoint(
        self, project_id: str, name: str, snapshot: dict[str, Any]
    ) -> None:
        version = int(snapshot.get("version", 0))
        try:
            async with self._session() as session:
                record = await session.scalar(
                    select(CheckpointRecord).where(
                        CheckpointRecord.project_id == project_id,
                        CheckpointRecord.name == name,
                    )
                )
                if record is None:
                    session.add(
                        CheckpointRecord(
                            project_id=project_id,
                            name=name,
                            version=version,
                            payload=snapshot,
                        )
                    )
                else:
                    record.version = version
                    record.payload = snapshot
                    record.updated_at = _utcnow()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to save checkpoint '{name}': {exc}", project_id=project_id
            ) from exc

    async def load_checkpoint(self, project_id: str, name: str) -> dict[str, Any] | None:
        try:
            async with self._session() as session:
                record = await session.scalar(
                    select(CheckpointRecord).where(
                        CheckpointRecord.project_id == project_id,
                        CheckpointRecord.name == name,
                    )
                )
                return None if record is None else dict(record.payload)
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to load checkpoint '{name}': {exc}", project_id=project_id
            ) from exc

    async def list_checkpoints(self, project_id: str) -> list[str]:
        try:
            async with self._session() as session:
                result = await session.scalars(
                    select(CheckpointRecord.name)
                    .where(CheckpointRecord.project_id == project_id)
                    .order_by(CheckpointRecord.version)
                )
                return list(result)
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to list checkpoints: {exc}", project_id=project_id
            ) from exc

    async def list_projects(self) -> list[ProjectSummary]:
        try:
            async with self._session() as session:
                records = (
                    await session.scalars(
                        select(CheckpointRecord).order_by(CheckpointRecord.project_id)
                    )
                ).all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to list projects: {exc}") from exc
        grouped: dict[str, list[tuple[str, int, dict[str, Any], datetime]]] = {}
        for r in records:
            grouped.setdefault(r.project_id, []).append(
                (r.name, r.version, r.payload, r.updated_at)
            )
        return [_summary(pid, rows) for pid, rows in grouped.items()]

    async def delete_project(self, project_id: str) -> int:
        try:
            async with self._session() as session:
                result = await session.execute(
                    delete(CheckpointRecord).where(CheckpointRecord.project_id == project_id)
                )
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to delete project: {exc}", project_id=project_id
            ) from exc


def create_persistence_store(settings: Settings) -> PersistenceStore:
    """Pick the backend from ``settings.persistence_url``."""
    if settings.persistence_url == MEMORY_URL:
        return InMemoryPersistenceStore()
    return SQLPersistenceStore(settings.persistence_url, echo=settings.db_echo_sql)
