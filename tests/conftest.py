"""
Pytest configuration and fixtures.
"""
from typing import Any, Dict, List, Optional

import pytest

from octopus.domain.context.memory.run_memory import RunMemory
from octopus.domain.context.state.run_repository import InMemoryRunRepository
from octopus.domain.events.event_bus import EventBus
from octopus.domain.models.run_state import Run
from octopus.domain.tool.models import ToolContext
from octopus.domain.tool.tool_registry import ToolRegistry


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers requested delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


class ScriptedTool:
    """Fails a fixed number of times, then returns a result"""

    def __init__(
        self,
        fail_times: int = 0,
        link: Optional[str] = "https://tools.example/out",
        memory_patch: Optional[Dict[str, Any]] = None,
        payload: Any = None,
        error: str = "boom"
    ):
        self.fail_times = fail_times
        self.link = link
        self.memory_patch = memory_patch
        self.payload = payload
        self.error = error
        self.calls: List[ToolContext] = []

    async def __call__(self, context: ToolContext):
        self.calls.append(context)
        if len(self.calls) <= self.fail_times:
            raise RuntimeError(f"{self.error} #{len(self.calls)}")
        return {"link": self.link, "payload": self.payload, "memoryPatch": self.memory_patch}


@pytest.fixture
def repository():
    return InMemoryRunRepository()


@pytest.fixture
def bus(repository):
    return EventBus(repository)


@pytest.fixture
def memory(repository):
    return RunMemory(repository)


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def make_run(repository):
    def factory(tools, instruction="Summarize the quarterly report", owner_id="user-1", **kwargs) -> Run:
        run = Run.create(owner_id=owner_id, instruction=instruction, tools=list(tools), **kwargs)
        repository.put(run)
        return run
    return factory
