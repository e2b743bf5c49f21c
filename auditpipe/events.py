"""Stage events and observers.

The orchestrator publishes a StageEvent on every stage transition. Presentation
layers either register an observer (called synchronously) or subscribe to a
queue and consume events as a stream. Observers must handle their own
exceptions.
"""

import asyncio
import sys
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from auditpipe.pipeline.structures import PipelineStageExecution, Stage, StageStatus, utcnow


@dataclass(frozen=True)
class StageEvent:
    execution_id: str
    stage: Stage
    status: StageStatus
    progress: int
    message: str = ""
    error: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_record(cls, record: PipelineStageExecution) -> "StageEvent":
        return cls(
            execution_id=record.execute_id,
            stage=record.stage,
            status=record.status,
            progress=record.progress,
            message=record.message,
            error=record.error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "executionId": self.execution_id,
            "stage": self.stage.value,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class PipelineObserver(Protocol):
    """Observer interface for pipeline events."""

    def on_stage_event(self, event: StageEvent) -> None:
        """Called on every stage transition and progress update."""
        ...

    def on_run_complete(self, execution_id: str, status: str, error: str | None) -> None:
        """Called once when the run reaches a terminal status."""
        ...


class EventBus:
    """Publish/subscribe channel for one pipeline run."""

    def __init__(self, observers: list[PipelineObserver] | None = None):
        self.observers: list[PipelineObserver] = list(observers or [])
        self._queues: list[asyncio.Queue] = []
        self.history: list[StageEvent] = []
        self.closed = False

    def add_observer(self, observer: PipelineObserver) -> None:
        self.observers.append(observer)

    def subscribe(self, replay: bool = True) -> asyncio.Queue:
        """Queue receiving every future event; None marks the end of the run."""
        queue: asyncio.Queue = asyncio.Queue()
        if replay:
            for event in self.history:
                queue.put_nowait(event)
        if self.closed:
            queue.put_nowait(None)
        else:
            self._queues.append(queue)
        return queue

    async def stream(self) -> AsyncIterator[StageEvent]:
        queue = self.subscribe()
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event

    def publish(self, event: StageEvent) -> None:
        self.history.append(event)
        for observer in self.observers:
            observer.on_stage_event(event)
        for queue in self._queues:
            queue.put_nowait(event)

    def close(self, execution_id: str, status: str, error: str | None = None) -> None:
        if self.closed:
            return
        self.closed = True
        for observer in self.observers:
            observer.on_run_complete(execution_id, status, error)
        for queue in self._queues:
            queue.put_nowait(None)
        self._queues.clear()


class ConsoleLogger:
    """Plain ASCII observer for non-interactive output."""

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

    def on_stage_event(self, event: StageEvent) -> None:
        if event.status is StageStatus.FAILED:
            # failures print even in quiet mode
            print(f"[FAILED] {event.stage.value}: {event.error or event.message}", file=sys.stderr, flush=True)
            return
        if self.quiet or event.status is StageStatus.PENDING:
            return
        if event.status is StageStatus.RUNNING and event.progress == 0:
            print(f"[START] {event.stage.value}", flush=True)
        elif event.status is StageStatus.COMPLETED:
            print(f"[OK] {event.stage.value} {event.message}".rstrip(), flush=True)
        elif event.status is StageStatus.SKIPPED:
            print(f"[SKIPPED] {event.stage.value} {event.message}".rstrip(), flush=True)

    def on_run_complete(self, execution_id: str, status: str, error: str | None) -> None:
        if not self.quiet or error:
            print(f"[{status}] {execution_id}" + (f": {error}" if error else ""), flush=True)
