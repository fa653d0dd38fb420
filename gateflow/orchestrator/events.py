"""
GATEFLOW — Outbound Event Queue
===============================
Fire-and-forget delivery of scheduler events to an ``EventSink``.

The scheduler only ever calls ``emit``, which never blocks: events go onto
a bounded asyncio queue and a separate consumer task forwards them to the
sink. When the queue is full the oldest undelivered event is dropped.
``stop`` waits a bounded time for the sink, so a stalled sink can delay
the end of a run but never prevent it.
Sink failures are logged and never reach the scheduler.

Usage:
    emitter = EventEmitter(sink, maxsize=1000)
    await emitter.start()
    emitter.emit(EventType.NODE_TRANSITION, {"node_id": "t1"})
    await emitter.stop()
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from gateflow.core.logging import get_logger

logger = get_logger(__name__)


class EventType(StrEnum):
    GRAPH_TRANSITION = "graph.transition"
    NODE_TRANSITION = "node.transition"
    CHECKPOINT_CREATED = "checkpoint.created"
    CHECKPOINT_RESTORED = "checkpoint.restored"
    RETRY_SCHEDULED = "node.retry_scheduled"
    REWORK_ENQUEUED = "node.rework_enqueued"
    MANUAL_INTERVENTION = "failure.manual_intervention"
    TIMEOUT_WARNING = "node.timeout_warning"
    CYCLE_ITERATION = "edge.cycle_iteration"
    RECOVERY_ATTEMPT = "recovery.attempt"
    GRAPH_TERMINAL = "graph.terminal"


class EventSink(Protocol):
    """Collaborator that receives events, e.g. a UI broadcaster."""

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class OutboundEvent:
    event_type: EventType
    payload: dict[str, Any]
    created_at: float = field(default_factory=time.time)


class EventEmitter:
    """Bounded queue plus one consumer task per project."""

    def __init__(
        self,
        sink: EventSink | None = None,
        maxsize: int = 1000,
        history_size: int = 1000,
        drain_timeout: float = 5.0,
    ) -> None:
        self._sink = sink
        self._drain_timeout = drain_timeout
        self._queue: asyncio.Queue[OutboundEvent] = asyncio.Queue(maxsize=maxsize)
        self._history: deque[OutboundEvent] = deque(maxlen=history_size)
        self._consumer: asyncio.Task[None] | None = None
        self._delivering = False
        self.dropped = 0
        self.undelivered = 0

    @property
    def history(self) -> list[OutboundEvent]:
        return list(self._history)

    def of_type(self, event_type: EventType) -> list[OutboundEvent]:
        return [e for e in self._history if e.event_type == event_type]

    def emit(self, event_type: EventType, payload: dict[str, Any]) -> None:
        event = OutboundEvent(event_type, dict(payload))
        self._history.append(event)
        if self._sink is None:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            logger.warning("events.dropped_oldest", dropped=self.dropped)
        self._queue.put_nowait(event)

    async def start(self) -> None:
        if self._sink is not None and self._consumer is None:
            self._consumer = asyncio.create_task(self._drain())

    async def stop(self) -> None:
        """
        Deliver what is queued, then stop the consumer.

        Waits at most ``drain_timeout`` seconds for the sink. Events it has
        not accepted by then are discarded and counted in ``undelivered``.
        """
        if self._consumer is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=self._drain_timeout)
        except TimeoutError:
            abandoned = self._queue.qsize() + int(self._delivering)
            self.undelivered += abandoned
            logger.warning(
                "events.drain_timeout",
                undelivered=abandoned,
                timeout_seconds=self._drain_timeout,
            )
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def _drain(self) -> None:
        sink = self._sink
        if sink is None:
            return
        while True:
            event = await self._queue.get()
            self._delivering = True
            try:
                await sink.publish(event.event_type.value, event.payload)
            except Exception:
                logger.exception("events.sink_failed", event_type=event.event_type.value)
            finally:
                self._delivering = False
                self._queue.task_done()
