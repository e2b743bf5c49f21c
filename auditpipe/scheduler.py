"""Concurrency-bounded agent task scheduler.

Agents run as asyncio tasks, at most ``max_concurrency`` at a time. Failed or
timed-out tasks are retried with exponential backoff plus decorrelated jitter
until ``max_retries`` is exhausted, after which they are failed permanently.

Status transitions are applied only by the dispatcher coroutine. Workers and
backoff timers report to it through an inbox queue; external callers enqueue,
read stats, await completions, or toggle the loop.
"""

import asyncio
import copy
import heapq
import inspect
import itertools
import random
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from auditpipe.agents.base import AgentType, AnalyzerAgent
from auditpipe.errors import (
    AuditPipeError,
    ConfigError,
    ExecutionError,
    QueueFullError,
    TaskTimeoutError,
    ValidationError,
)
from auditpipe.pipeline.structures import utcnow
from auditpipe.utils.logging import logger


class TaskStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass
class Task:
    """One scheduled agent invocation."""

    id: str
    agent_type: AgentType
    input: Any
    priority: int
    max_retries: int
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    output: Any = None
    attempts: int = 0
    backoff_history_ms: list[float] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    # monotonic bookkeeping, not part of the record
    _attempt_started: float | None = field(default=None, repr=False)
    _busy_ms: float = field(default=0.0, repr=False)
    _last_jitter_ms: float = field(default=0.0, repr=False)


@dataclass(frozen=True)
class SchedulerStats:
    total_tasks: int
    pending_tasks: int
    running_tasks: int
    completed_tasks: int
    failed_tasks: int
    average_execution_time: float  # ms per finished task, attempts only (backoff waits excluded)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTasks": self.total_tasks,
            "pendingTasks": self.pending_tasks,
            "runningTasks": self.running_tasks,
            "completedTasks": self.completed_tasks,
            "failedTasks": self.failed_tasks,
            "averageExecutionTime": self.average_execution_time,
        }


@dataclass(frozen=True)
class SchedulerConfig:
    max_concurrency: int = 4
    max_retries: int = 3
    retry_base_delay_ms: float = 1000
    task_timeout_ms: float = 60000
    max_queue_size: int = 10000
    jitter_ratio: float = 0.25
    priority_boost_on_retry: bool = True

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ConfigError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_base_delay_ms < 0:
            raise ConfigError("retry_base_delay_ms must be >= 0")
        if self.task_timeout_ms <= 0:
            raise ConfigError("task_timeout_ms must be > 0")
        if self.max_queue_size < 1:
            raise ConfigError("max_queue_size must be >= 1")
        if not 0 <= self.jitter_ratio <= 1:
            raise ConfigError("jitter_ratio must be within [0, 1]")

    @classmethod
    def from_runtime(cls, cfg: dict[str, Any], **overrides) -> "SchedulerConfig":
        section = dict(cfg.get("scheduler", {}))
        section.update({k: v for k, v in overrides.items() if v is not None})
        known = {k: section[k] for k in cls.__dataclass_fields__ if k in section}
        return cls(**known)


def backoff_delay_ms(
    retry_count: int,
    base_ms: float,
    jitter_ratio: float,
    previous_jitter_ms: float,
    rng: random.Random,
) -> tuple[float, float]:
    """Delay before retry number ``retry_count + 1``.

    The exponential part is ``base_ms * 2**retry_count``. Jitter is drawn from
    ``[0, 3 * previous_jitter]`` (at least ``[0, base_ms]``) and capped at
    ``jitter_ratio`` of the exponential part.

    Returns:
        (total delay, jitter component), both in milliseconds
    """
    exponential = base_ms * (2**retry_count)
    cap = exponential * jitter_ratio
    if cap <= 0:
        return exponential, 0.0
    upper = max(base_ms, previous_jitter_ms * 3)
    jitter = min(cap, rng.uniform(0, upper))
    return exponential + jitter, jitter


class Scheduler:
    """Priority queue plus bounded worker pool for agent tasks.

    One instance per pipeline run; instances share no state.
    """

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        agents: Iterable[AnalyzerAgent] = (),
        rng: random.Random | None = None,
    ):
        self.config = config or SchedulerConfig()
        self._agents: dict[AgentType, AnalyzerAgent] = {}
        for agent in agents:
            self.register_agent(agent)
        self._rng = rng or random.Random()

        self._tasks: dict[str, Task] = {}
        self._ready: list[tuple[int, int, str]] = []
        self._backoff: dict[str, asyncio.TimerHandle] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._ids = itertools.count(1)
        self._seq = itertools.count()

        self._accepting = False
        self._inbox: asyncio.Queue | None = None
        self._dispatcher: asyncio.Task | None = None
        self._idle: asyncio.Event | None = None

        self._total = 0
        self._pending = 0
        self._running = 0
        self._completed = 0
        self._failed = 0
        self._exec_time_total_ms = 0.0
        self._exec_count = 0

    # ------------------------------------------------------------------
    # registration and enqueue
    # ------------------------------------------------------------------

    def register_agent(self, agent: AnalyzerAgent) -> None:
        self._agents[AgentType.parse(agent.agent_type)] = agent

    def add_task(
        self,
        agent_type: AgentType | str,
        input: Any,
        priority: int = 0,
        max_retries: int | None = None,
    ) -> str:
        """Enqueue one agent invocation and return its task id.

        Raises:
            InvalidAgentType: agent_type is not a known variant
            ConfigError: no agent registered for the variant
            QueueFullError: pending tasks already at max_queue_size
            ValidationError: malformed priority/max_retries or agent input
        """
        resolved = AgentType.parse(agent_type)
        agent = self._agents.get(resolved)
        if agent is None:
            raise ConfigError(f"No agent registered for type {resolved.value!r}")
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError(f"priority must be an int, got {priority!r}")
        if max_retries is not None and (
            isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0
        ):
            raise ValidationError(f"max_retries must be a non-negative int, got {max_retries!r}")
        if self._pending >= self.config.max_queue_size:
            raise QueueFullError(
                f"Queue is full ({self._pending}/{self.config.max_queue_size} pending tasks)"
            )
        agent.validate_input(input)

        task = Task(
            id=f"task_{next(self._ids)}",
            agent_type=resolved,
            input=input,
            priority=priority,
            max_retries=self.config.max_retries if max_retries is None else max_retries,
        )
        self._tasks[task.id] = task
        self._total += 1
        self._pending += 1
        self._push_ready(task)
        self._refresh_idle()
        self._notify("wake")
        return task.id

    def add_tasks(self, agent_type: AgentType | str, inputs: Iterable[Any], priority: int = 0) -> list[str]:
        return [self.add_task(agent_type, item, priority=priority) for item in inputs]

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin dequeuing. Must be called from a coroutine on the event loop."""
        loop = asyncio.get_running_loop()
        self._ensure_primitives()
        self._accepting = True
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = loop.create_task(self._dispatch_loop(), name="scheduler-dispatch")
        self._refresh_idle()
        self._notify("wake")

    def stop(self) -> None:
        """Stop dequeuing. In-flight tasks run to completion."""
        self._accepting = False
        self._refresh_idle()

    @property
    def running(self) -> bool:
        return self._accepting

    def clear(self) -> int:
        """Cancel every pending task (queued or waiting on backoff).

        Running and terminal tasks are untouched. Returns the number cancelled.
        """
        cancelled = 0
        for task_id, task in list(self._tasks.items()):
            if task.status is not TaskStatus.PENDING:
                continue
            handle = self._backoff.pop(task_id, None)
            if handle is not None:
                handle.cancel()
            del self._tasks[task_id]
            self._pending -= 1
            self._total -= 1
            cancelled += 1
            for waiter in self._waiters.pop(task_id, []):
                if not waiter.done():
                    waiter.cancel()
        self._ready.clear()
        if cancelled:
            logger.debug(f"Scheduler cleared {cancelled} pending tasks")
        self._refresh_idle()
        return cancelled

    async def join(self) -> None:
        """Wait until nothing is running and nothing is left to dequeue."""
        self._ensure_primitives()
        self._refresh_idle()
        await self._idle.wait()

    async def aclose(self) -> None:
        """Drain in-flight tasks and shut the dispatcher down."""
        self.stop()
        if self._dispatcher is not None and not self._dispatcher.done():
            await self.join()
            self._notify("close")
            await self._dispatcher
        for handle in self._backoff.values():
            handle.cancel()
        self._backoff.clear()

    async def __aenter__(self) -> "Scheduler":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.clear()
        await self.aclose()

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_stats(self) -> SchedulerStats:
        average = self._exec_time_total_ms / self._exec_count if self._exec_count else 0.0
        return SchedulerStats(
            total_tasks=self._total,
            pending_tasks=self._pending,
            running_tasks=self._running,
            completed_tasks=self._completed,
            failed_tasks=self._failed,
            average_execution_time=average,
        )

    def get_task(self, task_id: str) -> Task | None:
        """Snapshot of a task record, or None if unknown or cleared."""
        task = self._tasks.get(task_id)
        if task is None:
            return None
        snapshot = copy.copy(task)
        snapshot.backoff_history_ms = list(task.backoff_history_ms)
        snapshot.errors = list(task.errors)
        return snapshot

    def tasks(self, status: TaskStatus | None = None) -> list[Task]:
        return [
            self.get_task(task_id)
            for task_id, task in self._tasks.items()
            if status is None or task.status is status
        ]

    def completion(self, task_id: str) -> asyncio.Future:
        """Future resolved with the task snapshot once it is terminal.

        The future is cancelled if the task is removed by clear().
        """
        if task_id not in self._tasks:
            raise ValidationError(f"Unknown task id: {task_id}")
        future = asyncio.get_running_loop().create_future()
        task = self._tasks[task_id]
        if task.status.terminal:
            future.set_result(self.get_task(task_id))
        else:
            self._waiters.setdefault(task_id, []).append(future)
        return future

    async def wait_for(self, task_ids: Iterable[str]) -> list[Task]:
        return list(await asyncio.gather(*(self.completion(t) for t in task_ids)))

    # ------------------------------------------------------------------
    # dispatcher (sole writer of task status)
    # ------------------------------------------------------------------

    def _ensure_primitives(self) -> None:
        if self._inbox is None:
            self._inbox = asyncio.Queue()
        if self._idle is None:
            self._idle = asyncio.Event()

    def _notify(self, kind: str, payload: Any = None) -> None:
        if self._inbox is not None:
            self._inbox.put_nowait((kind, payload))

    async def _dispatch_loop(self) -> None:
        while True:
            kind, payload = await self._inbox.get()
            if kind == "close":
                return
            if kind == "done":
                self._on_success(*payload)
            elif kind == "error":
                self._on_failure(*payload)
            elif kind == "retry":
                self._on_retry_ready(payload)
            self._fill_slots()
            self._refresh_idle()

    def _push_ready(self, task: Task) -> None:
        heapq.heappush(self._ready, (-task.priority, next(self._seq), task.id))

    def _fill_slots(self) -> None:
        while self._accepting and self._running < self.config.max_concurrency and self._ready:
            _, _, task_id = heapq.heappop(self._ready)
            task = self._tasks.get(task_id)
            if task is None or task.status is not TaskStatus.PENDING or task_id in self._backoff:
                continue
            self._launch(task)

    def _timeout_seconds(self, agent: AnalyzerAgent) -> float:
        timeout_ms = self.config.task_timeout_ms
        hint = getattr(agent, "max_duration_hint_ms", None)
        if hint:
            timeout_ms = min(timeout_ms, hint)
        return timeout_ms / 1000

    def _launch(self, task: Task) -> None:
        task.status = TaskStatus.RUNNING
        task.started_at = utcnow()
        task.attempts += 1
        task._attempt_started = time.monotonic()
        self._pending -= 1
        self._running += 1

        agent = self._agents[task.agent_type]
        timeout = self._timeout_seconds(agent)
        self._inflight[task.id] = asyncio.get_running_loop().create_task(
            self._execute(task, agent, timeout), name=task.id
        )

    async def _execute(self, task: Task, agent: AnalyzerAgent, timeout: float) -> None:
        try:
            output = await asyncio.wait_for(self._invoke(agent, task.input), timeout=timeout)
        except asyncio.TimeoutError:
            self._notify(
                "error",
                (task, TaskTimeoutError(f"{task.id} ({task.agent_type.value}) exceeded {timeout:.3f}s")),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not isinstance(exc, AuditPipeError):
                wrapped = ExecutionError(f"{type(exc).__name__}: {exc}")
                wrapped.__cause__ = exc
                exc = wrapped
            self._notify("error", (task, exc))
        else:
            self._notify("done", (task, output))

    @staticmethod
    async def _invoke(agent: AnalyzerAgent, payload: Any) -> Any:
        if inspect.iscoroutinefunction(agent.execute):
            return await agent.execute(payload)
        return await asyncio.to_thread(agent.execute, payload)

    @staticmethod
    def _end_attempt(task: Task) -> None:
        if task._attempt_started is not None:
            task._busy_ms += (time.monotonic() - task._attempt_started) * 1000
            task._attempt_started = None

    def _record_terminal(self, task: Task) -> None:
        task.completed_at = utcnow()
        # backoff waits between attempts are not execution time
        if task.attempts:
            self._exec_time_total_ms += task._busy_ms
            self._exec_count += 1
        snapshot = self.get_task(task.id)
        for waiter in self._waiters.pop(task.id, []):
            if not waiter.done():
                waiter.set_result(snapshot)

    def _on_success(self, task: Task, output: Any) -> None:
        self._inflight.pop(task.id, None)
        if task.status is not TaskStatus.RUNNING:
            return
        self._end_attempt(task)
        self._running -= 1
        self._completed += 1
        task.status = TaskStatus.COMPLETED
        task.output = output
        task.error = None
        self._record_terminal(task)
        logger.debug(f"{task.id} ({task.agent_type.value}) completed after {task.attempts} attempt(s)")

    def _on_failure(self, task: Task, exc: Exception) -> None:
        self._inflight.pop(task.id, None)
        if task.status is not TaskStatus.RUNNING:
            return
        self._end_attempt(task)
        self._running -= 1
        task.error = str(exc)
        task.errors.append(f"{type(exc).__name__}: {exc}")

        if task.retry_count < task.max_retries:
            delay_ms, jitter_ms = backoff_delay_ms(
                task.retry_count,
                self.config.retry_base_delay_ms,
                self.config.jitter_ratio,
                task._last_jitter_ms,
                self._rng,
            )
            task._last_jitter_ms = jitter_ms
            task.backoff_history_ms.append(delay_ms)
            task.retry_count += 1
            task.status = TaskStatus.PENDING
            if self.config.priority_boost_on_retry:
                task.priority += 1
            self._pending += 1
            self._backoff[task.id] = asyncio.get_running_loop().call_later(
                delay_ms / 1000, self._notify, "retry", task.id
            )
            logger.warning(
                f"{task.id} ({task.agent_type.value}) failed: {exc}; "
                f"retry {task.retry_count}/{task.max_retries} in {delay_ms:.0f}ms"
            )
            return

        task.status = TaskStatus.FAILED
        self._failed += 1
        self._record_terminal(task)
        logger.error(
            f"{task.id} ({task.agent_type.value}) failed permanently after "
            f"{task.attempts} attempt(s): {exc}"
        )

    def _on_retry_ready(self, task_id: str) -> None:
        if self._backoff.pop(task_id, None) is None:
            return
        task = self._tasks.get(task_id)
        if task is not None and task.status is TaskStatus.PENDING:
            self._push_ready(task)

    def _refresh_idle(self) -> None:
        if self._idle is None:
            return
        drained = self._pending == 0 or not self._accepting
        if self._running == 0 and not self._inflight and drained:
            self._idle.set()
        else:
            self._idle.clear()
