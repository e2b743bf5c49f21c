"""Tests for the concurrency-bounded agent scheduler."""

import asyncio
import random

import pytest

from auditpipe.agents import AgentType, SecurityAgent
from auditpipe.errors import ConfigError, InvalidAgentType, QueueFullError, ValidationError
from auditpipe.scheduler import Scheduler, SchedulerConfig, TaskStatus, backoff_delay_ms


def _assert_stats_consistent(scheduler):
    stats = scheduler.get_stats()
    assert stats.total_tasks == (
        stats.pending_tasks + stats.running_tasks + stats.completed_tasks + stats.failed_tasks
    )
    return stats


class TestConcurrency:
    """max_concurrency bounds the number of running tasks."""

    def test_ten_tasks_four_slots(self, gated_agent, eventually):
        """Ten queued tasks with four slots: four run, six wait, all finish."""

        async def scenario():
            scheduler = Scheduler(SchedulerConfig(max_concurrency=4), agents=[gated_agent])
            ids = scheduler.add_tasks("ast", [[i] for i in range(10)])
            scheduler.start()

            await eventually(lambda: gated_agent.started == 4)
            await asyncio.sleep(0.02)
            assert gated_agent.started == 4
            stats = _assert_stats_consistent(scheduler)
            assert stats.running_tasks == 4
            assert stats.pending_tasks == 6

            gated_agent.release()
            tasks = await scheduler.wait_for(ids)
            await scheduler.aclose()
            return tasks, scheduler.get_stats()

        tasks, stats = asyncio.run(scenario())
        assert all(t.status is TaskStatus.COMPLETED for t in tasks)
        assert stats.completed_tasks == 10
        assert stats.pending_tasks == 0
        assert stats.running_tasks == 0
        assert stats.average_execution_time >= 0

    def test_tasks_wait_until_start(self, recording_agent):
        """Nothing is dequeued before start() or after stop()."""

        async def scenario():
            scheduler = Scheduler(agents=[recording_agent])
            task_id = scheduler.add_task(AgentType.AST, ["a"])
            await asyncio.sleep(0.01)
            before = scheduler.get_task(task_id).status

            scheduler.start()
            scheduler.stop()
            second = scheduler.add_task(AgentType.AST, ["b"])
            await asyncio.sleep(0.01)
            while_stopped = scheduler.get_task(second).status

            scheduler.start()
            await scheduler.wait_for([task_id, second])
            await scheduler.aclose()
            return before, while_stopped

        before, while_stopped = asyncio.run(scenario())
        assert before is TaskStatus.PENDING
        assert while_stopped is TaskStatus.PENDING
        assert sorted(recording_agent.seen) == [["a"], ["b"]]

    def test_stop_drains_in_flight(self, gated_agent, eventually):
        """stop() lets running tasks finish and leaves queued ones pending."""

        async def scenario():
            scheduler = Scheduler(SchedulerConfig(max_concurrency=2), agents=[gated_agent])
            ids = scheduler.add_tasks("ast", [[i] for i in range(5)])
            scheduler.start()
            await eventually(lambda: gated_agent.started == 2)

            scheduler.stop()
            gated_agent.release()
            await scheduler.join()
            statuses = [scheduler.get_task(task_id).status for task_id in ids]
            stats = _assert_stats_consistent(scheduler)
            scheduler.clear()
            await scheduler.aclose()
            return statuses, stats

        statuses, stats = asyncio.run(scenario())
        assert statuses[:2] == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]
        assert statuses[2:] == [TaskStatus.PENDING] * 3
        assert gated_agent.started == 2
        assert stats.completed_tasks == 2
        assert stats.pending_tasks == 3
        assert stats.running_tasks == 0


class TestOrdering:
    def test_priority_then_fifo(self, recording_agent):
        """Higher priority first; equal priorities keep insertion order."""
        scheduler = Scheduler(SchedulerConfig(max_concurrency=1), agents=[recording_agent])
        ids = [
            scheduler.add_task("ast", ["low-1"], priority=0),
            scheduler.add_task("ast", ["high-1"], priority=5),
            scheduler.add_task("ast", ["low-2"], priority=0),
            scheduler.add_task("ast", ["high-2"], priority=5),
        ]

        async def scenario():
            scheduler.start()
            await scheduler.wait_for(ids)
            await scheduler.aclose()

        asyncio.run(scenario())
        assert recording_agent.seen == [["high-1"], ["high-2"], ["low-1"], ["low-2"]]

    def test_task_ids_are_sequential(self, recording_agent):
        scheduler = Scheduler(agents=[recording_agent])
        assert scheduler.add_task("ast", []) == "task_1"
        assert scheduler.add_task("ast", []) == "task_2"


class TestRetries:
    """Failed attempts are retried with exponential backoff."""

    def test_always_failing_task_exhausts_retries(self, failing_agent):
        """Three retries: four attempts, three backoff delays, then failed."""
        agent = failing_agent
        config = SchedulerConfig(max_retries=3, retry_base_delay_ms=5, jitter_ratio=0.25)

        async def scenario():
            scheduler = Scheduler(config, agents=[agent], rng=random.Random(7))
            task_id = scheduler.add_task("ast", [])
            scheduler.start()
            (task,) = await scheduler.wait_for([task_id])
            await scheduler.aclose()
            return task, scheduler.get_stats()

        task, stats = asyncio.run(scenario())
        assert task.status is TaskStatus.FAILED
        assert agent.calls == 4
        assert task.attempts == 4
        assert task.retry_count == 3
        assert len(task.backoff_history_ms) == 3
        for i, delay in enumerate(task.backoff_history_ms):
            exponential = 5 * 2**i
            assert exponential <= delay <= exponential * 1.25
        assert task.error == "RuntimeError: analyzer crashed"
        assert len(task.errors) == 4
        assert all(e.startswith("ExecutionError") for e in task.errors)
        # one priority step per retry
        assert task.priority == 3
        assert stats.failed_tasks == 1
        assert stats.total_tasks == 1

    def test_per_task_retry_override(self, fast_config, failing_agent):
        agent = failing_agent

        async def scenario():
            scheduler = Scheduler(fast_config, agents=[agent])
            task_id = scheduler.add_task("ast", [], max_retries=1)
            scheduler.start()
            (task,) = await scheduler.wait_for([task_id])
            await scheduler.aclose()
            return task

        task = asyncio.run(scenario())
        assert task.status is TaskStatus.FAILED
        assert agent.calls == 2
        assert len(task.backoff_history_ms) == 1

    def test_backoff_wait_is_not_execution_time(self, failing_agent):
        config = SchedulerConfig(max_retries=1, retry_base_delay_ms=300, jitter_ratio=0.0)

        async def scenario():
            scheduler = Scheduler(config, agents=[failing_agent])
            task_id = scheduler.add_task("ast", [])
            scheduler.start()
            (task,) = await scheduler.wait_for([task_id])
            await scheduler.aclose()
            return task, scheduler.get_stats()

        task, stats = asyncio.run(scenario())
        assert task.backoff_history_ms == [300]
        assert (task.completed_at - task.created_at).total_seconds() >= 0.3
        assert 0 <= stats.average_execution_time < 150

    def test_backoff_delay_is_exponential_with_capped_jitter(self):
        rng = random.Random(0)
        previous = 0.0
        for retry in range(5):
            delay, jitter = backoff_delay_ms(retry, 100, 0.25, previous, rng)
            exponential = 100 * 2**retry
            assert delay == pytest.approx(exponential + jitter)
            assert 0 <= jitter <= exponential * 0.25
            previous = jitter

    def test_zero_jitter_ratio_gives_pure_exponential(self):
        delay, jitter = backoff_delay_ms(3, 10, 0.0, 50.0, random.Random(1))
        assert delay == 80
        assert jitter == 0.0


class TestTimeouts:
    def test_timeout_fails_task(self, slow_agent):
        """A task that outlives task_timeout_ms fails with TaskTimeoutError."""
        config = SchedulerConfig(max_retries=0, task_timeout_ms=50)

        async def scenario():
            scheduler = Scheduler(config, agents=[slow_agent])
            task_id = scheduler.add_task("ast", [])
            scheduler.start()
            (task,) = await scheduler.wait_for([task_id])
            await scheduler.aclose()
            return task

        task = asyncio.run(scenario())
        assert task.status is TaskStatus.FAILED
        assert task.errors[0].startswith("TaskTimeoutError")
        assert "exceeded" in task.error

    def test_agent_hint_shortens_timeout(self, hinted_slow_agent):
        """The smaller of task_timeout_ms and the agent's duration hint applies."""
        config = SchedulerConfig(max_retries=0, task_timeout_ms=60000)

        async def scenario():
            scheduler = Scheduler(config, agents=[hinted_slow_agent])
            task_id = scheduler.add_task("ast", [])
            scheduler.start()
            (task,) = await asyncio.wait_for(scheduler.wait_for([task_id]), timeout=3)
            await scheduler.aclose()
            return task

        task = asyncio.run(scenario())
        assert task.status is TaskStatus.FAILED
        assert task.errors[0].startswith("TaskTimeoutError")


class TestClear:
    def test_clear_removes_pending_only(self, gated_agent, eventually):
        agent = gated_agent

        async def scenario():
            scheduler = Scheduler(SchedulerConfig(max_concurrency=1), agents=[agent])
            ids = [scheduler.add_task("ast", [i]) for i in range(3)]
            scheduler.start()
            await eventually(lambda: agent.started == 1)
            waiter = scheduler.completion(ids[2])

            cleared = scheduler.clear()
            stats = _assert_stats_consistent(scheduler)
            gone = scheduler.get_task(ids[1])

            agent.release()
            (first,) = await scheduler.wait_for([ids[0]])
            await scheduler.aclose()
            return cleared, stats, gone, waiter, first

        cleared, stats, gone, waiter, first = asyncio.run(scenario())
        assert cleared == 2
        assert stats.total_tasks == 1
        assert stats.running_tasks == 1
        assert stats.pending_tasks == 0
        assert gone is None
        assert waiter.cancelled()
        assert first.status is TaskStatus.COMPLETED


class TestValidation:
    """Malformed enqueues fail fast and never reach the queue."""

    def test_unknown_agent_type(self, recording_agent):
        scheduler = Scheduler(agents=[recording_agent])
        with pytest.raises(InvalidAgentType):
            scheduler.add_task("linter", [])
        assert scheduler.get_stats().total_tasks == 0

    def test_unregistered_agent_type(self, recording_agent):
        scheduler = Scheduler(agents=[recording_agent])
        with pytest.raises(ConfigError, match="No agent registered"):
            scheduler.add_task("security", [])

    def test_bad_priority_and_retries(self, recording_agent):
        scheduler = Scheduler(agents=[recording_agent])
        with pytest.raises(ValidationError):
            scheduler.add_task("ast", [], priority="high")
        with pytest.raises(ValidationError):
            scheduler.add_task("ast", [], max_retries=-1)

    def test_agent_rejects_input(self):
        scheduler = Scheduler(agents=[SecurityAgent()])
        with pytest.raises(ValidationError, match="expects a list"):
            scheduler.add_task("security", "not a batch")

    def test_queue_full(self, recording_agent):
        scheduler = Scheduler(SchedulerConfig(max_queue_size=2), agents=[recording_agent])
        scheduler.add_task("ast", [])
        scheduler.add_task("ast", [])
        with pytest.raises(QueueFullError):
            scheduler.add_task("ast", [])
        assert scheduler.get_stats().pending_tasks == 2

    def test_unknown_task_completion(self, recording_agent):
        scheduler = Scheduler(agents=[recording_agent])
        with pytest.raises(ValidationError):
            scheduler.completion("task_99")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_concurrency": 0},
            {"max_retries": -1},
            {"task_timeout_ms": 0},
            {"jitter_ratio": 1.5},
            {"max_queue_size": 0},
        ],
    )
    def test_invalid_config(self, kwargs):
        with pytest.raises(ConfigError):
            SchedulerConfig(**kwargs)

    def test_stats_to_dict_keys(self, recording_agent):
        scheduler = Scheduler(agents=[recording_agent])
        scheduler.add_task("ast", [])
        assert scheduler.get_stats().to_dict() == {
            "totalTasks": 1,
            "pendingTasks": 1,
            "runningTasks": 0,
            "completedTasks": 0,
            "failedTasks": 0,
            "averageExecutionTime": 0.0,
        }
