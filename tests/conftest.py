"""Pytest configuration and fixtures."""
import asyncio
import time

import pytest

from auditpipe.agents.base import AgentType, AnalyzerAgent
from auditpipe.collector import InMemoryCollector
from auditpipe.scheduler import SchedulerConfig
from auditpipe.sink import InMemoryResultSink


class GatedAgent(AnalyzerAgent):
    """Async agent whose calls block until release() is called."""

    def __init__(self, agent_type=AgentType.AST, output=None):
        self.agent_type = agent_type
        self.output = output or []
        self.gate = asyncio.Event()
        self.started = 0
        self.finished = 0

    async def execute(self, payload):
        self.started += 1
        await self.gate.wait()
        self.finished += 1
        return list(self.output)

    def release(self):
        self.gate.set()


class FailingAgent(AnalyzerAgent):
    """Raises on every call."""

    def __init__(self, agent_type=AgentType.AST, message="analyzer crashed"):
        self.agent_type = agent_type
        self.message = message
        self.calls = 0

    def execute(self, payload):
        self.calls += 1
        raise RuntimeError(self.message)


class SlowAgent(AnalyzerAgent):
    """Sleeps longer than any test timeout."""

    def __init__(self, agent_type=AgentType.AST, seconds=5.0, hint_ms=None):
        self.agent_type = agent_type
        self.seconds = seconds
        self.max_duration_hint_ms = hint_ms

    async def execute(self, payload):
        await asyncio.sleep(self.seconds)
        return []


class RecordingAgent(AnalyzerAgent):
    """Records payloads in the order they were executed."""

    def __init__(self, agent_type=AgentType.AST):
        self.agent_type = agent_type
        self.seen = []

    def execute(self, payload):
        self.seen.append(payload)
        return []


@pytest.fixture
def gated_agent():
    return GatedAgent()


@pytest.fixture
def failing_agent():
    return FailingAgent()


@pytest.fixture
def slow_agent():
    return SlowAgent()


@pytest.fixture
def hinted_slow_agent():
    """Slow agent whose own duration hint is 50ms."""
    return SlowAgent(hint_ms=50)


@pytest.fixture
def gated_rule_agent():
    return GatedAgent(agent_type=AgentType.RULE)


@pytest.fixture
def recording_agent():
    return RecordingAgent()


@pytest.fixture
def fast_config():
    """Scheduler settings that keep retry tests fast."""
    return SchedulerConfig(max_concurrency=4, max_retries=0, retry_base_delay_ms=1, task_timeout_ms=5000)


@pytest.fixture
def eventually():
    """Poll a predicate from inside a coroutine until it holds."""

    async def wait(predicate, timeout=2.0):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return wait


@pytest.fixture
def sample_sources():
    """A small polyglot project with known findings."""
    return {
        "src/app.py": (
            "import os\n"
            "from src import util\n"
            "\n"
            "\n"
            "def handler(user_input):\n"
            "    # TODO: validate input\n"
            "    password = \"hunter2hunter2\"\n"
            "    print(password)\n"
            "    return eval(user_input)\n"
        ),
        "src/util.py": (
            "def helper(value):\n"
            "    return value * 2\n"
        ),
        "web/index.js": (
            "function render(el, html) {\n"
            "  console.log(html);\n"
            "  el.innerHTML = html;\n"
            "}\n"
        ),
        "requirements.txt": "requets\nflask>=2.0\nclick==8.1.7\n",
        "README.md": "# demo\n",
    }


@pytest.fixture
def collector(sample_sources):
    return InMemoryCollector(sample_sources)


@pytest.fixture
def memory_sink():
    return InMemoryResultSink()
