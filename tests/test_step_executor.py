"""
Unit tests for single-step execution with retries.
"""

import pytest

from octopus.domain.models.run_state import MessageType, StepStatus
from octopus.domain.orchestration.step_executor import RetryPolicy, StepExecutor
from octopus.infrastructure.observability.logging import MetricsCollector
from tests.conftest import ScriptedTool


@pytest.fixture
def executor(registry, bus, memory, sleep):
    return StepExecutor(registry=registry, bus=bus, memory=memory, sleep=sleep, metrics=MetricsCollector())


def _retrying(run):
    return [m for m in run.log if m.type == MessageType.INFO and m.payload.get("level") == "warn"]


class TestRetryPolicy:

    def test_backoff_doubles(self):
        policy = RetryPolicy(max_attempts=3, base_backoff_ms=600)
        assert [policy.backoff_ms(n) for n in (1, 2, 3)] == [600, 1200, 2400]

    def test_zero_backoff(self):
        assert RetryPolicy(base_backoff_ms=0).backoff_ms(4) == 0

    @pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"base_backoff_ms": -1}])
    def test_rejects_invalid_policy(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestStepExecutor:

    @pytest.mark.asyncio
    async def test_success_first_try(self, executor, registry, make_run, sleep):
        tool = ScriptedTool(link="https://notion.example/page", memory_patch={"page": "p1"}, payload={"id": 7})
        registry.register_stub("notion", tool)
        run = make_run(["notion"])
        step = run.steps[0]

        outcome = await executor.run(run, step, RetryPolicy(max_attempts=2, base_backoff_ms=600))

        assert outcome.status == StepStatus.DONE
        assert outcome.attempts == 1
        assert step.status == StepStatus.DONE
        assert step.link == "https://notion.example/page"
        assert step.payload == {"id": 7}
        assert step.error is None
        assert run.memory == {"page": "p1"}
        assert sleep.delays == []
        assert [(m.type, m.sender) for m in run.log] == [
            (MessageType.ACTION_REQUEST, "supervisor"),
            (MessageType.ACTION_RESULT, "notion"),
        ]
        assert run.log[0].payload["tool"] == "notion"
        assert run.log[1].payload == {"ok": True, "link": "https://notion.example/page"}

    @pytest.mark.asyncio
    async def test_fails_after_exhausting_attempts(self, executor, registry, make_run, sleep):
        tool = ScriptedTool(fail_times=5, error="rate limited")
        registry.register_stub("slack", tool)
        run = make_run(["slack"])
        step = run.steps[0]

        outcome = await executor.run(run, step, RetryPolicy(max_attempts=2, base_backoff_ms=600))

        assert outcome.failed
        assert step.status == StepStatus.FAILED
        assert step.error == "rate limited #2"
        assert len(tool.calls) == 2
        assert sleep.delays == [0.6]
        assert len(_retrying(run)) == 1

        results = [m for m in run.log if m.type == MessageType.ACTION_RESULT]
        assert results[-1].payload == {"ok": False, "error": "rate limited #2"}
        errors = [m for m in run.log if m.type == MessageType.ERROR]
        assert len(errors) == 1
        assert errors[0].payload["message"] == "rate limited #2"

    @pytest.mark.asyncio
    async def test_succeeds_on_second_attempt(self, executor, registry, make_run, sleep):
        tool = ScriptedTool(fail_times=1, memory_patch={"ticket": 42})
        registry.register_stub("github", tool)
        run = make_run(["github"])
        step = run.steps[0]

        outcome = await executor.run(run, step, RetryPolicy(max_attempts=3, base_backoff_ms=600))

        assert outcome.status == StepStatus.DONE
        assert outcome.attempts == 2
        assert len(_retrying(run)) == 1
        assert _retrying(run)[0].payload["attempt"] == 1
        assert _retrying(run)[0].payload["backoff_ms"] == 600
        assert run.memory == {"ticket": 42}
        assert sleep.delays == [0.6]
        assert [m.type for m in run.log].count(MessageType.ACTION_REQUEST) == 1

    @pytest.mark.asyncio
    async def test_backoff_grows_between_attempts(self, executor, registry, make_run, sleep):
        registry.register_stub("sheets", ScriptedTool(fail_times=3))
        run = make_run(["sheets"])

        await executor.run(run, run.steps[0], RetryPolicy(max_attempts=3, base_backoff_ms=600))

        assert sleep.delays == [0.6, 1.2]
        assert sleep.delays == sorted(sleep.delays)

    @pytest.mark.asyncio
    async def test_unknown_tool_fails_without_retry(self, executor, make_run, sleep):
        run = make_run(["fax"])
        step = run.steps[0]

        outcome = await executor.run(run, step, RetryPolicy(max_attempts=3, base_backoff_ms=600))

        assert outcome.failed
        assert outcome.attempts == 0
        assert step.error == "Unknown agent: fax"
        assert sleep.delays == []
        assert _retrying(run) == []

    @pytest.mark.asyncio
    async def test_memory_visible_to_invocation(self, executor, registry, make_run):
        tool = ScriptedTool()
        registry.register_stub("email", tool)
        run = make_run(["email"], source_file_url="http://files/a.txt")
        run.memory["lastSummary"] = "short"

        await executor.run(run, run.steps[0], RetryPolicy())

        context = tool.calls[0]
        assert context.memory == {"fileUrl": "http://files/a.txt", "lastSummary": "short"}
        assert context.instruction == run.instruction
        assert context.owner_id == "user-1"

    @pytest.mark.asyncio
    async def test_missing_link_keeps_previous_or_placeholder(self, executor, registry, make_run):
        registry.register_stub("notion", ScriptedTool(link=None))
        run = make_run(["notion", "notion"])
        run.steps[0].link = "https://earlier.example"

        await executor.run(run, run.steps[0], RetryPolicy())
        await executor.run(run, run.steps[1], RetryPolicy())

        assert run.steps[0].link == "https://earlier.example"
        assert run.steps[1].link == "#"

    @pytest.mark.asyncio
    async def test_primary_tool_links_to_source_file(self, executor, registry, make_run):
        registry.register_primary("summarizer", ScriptedTool(link="https://octopus.example/summaries/demo"))
        run = make_run(["summarizer"], source_file_id="f.pdf", source_file_url="http://host/uploads/f.pdf")

        outcome = await executor.run(run, run.steps[0], RetryPolicy())

        assert outcome.link == "http://host/uploads/f.pdf"
        assert run.steps[0].link == "http://host/uploads/f.pdf"

    @pytest.mark.asyncio
    async def test_other_tools_keep_their_own_link(self, executor, registry, make_run):
        registry.register_stub("slack", ScriptedTool(link="https://slack.example/msg"))
        run = make_run(["slack"], source_file_url="http://host/uploads/f.pdf")

        await executor.run(run, run.steps[0], RetryPolicy())

        assert run.steps[0].link == "https://slack.example/msg"

    @pytest.mark.asyncio
    async def test_done_step_is_not_rerun(self, executor, registry, make_run):
        tool = ScriptedTool()
        registry.register_stub("slack", tool)
        run = make_run(["slack"])
        step = run.steps[0]
        await executor.run(run, step, RetryPolicy())
        log_size = len(run.log)

        outcome = await executor.run(run, step, RetryPolicy())

        assert outcome.skipped
        assert outcome.status == StepStatus.DONE
        assert len(tool.calls) == 1
        assert len(run.log) == log_size

    @pytest.mark.asyncio
    async def test_bad_result_type_counts_as_failure(self, executor, registry, make_run):
        async def confused(context):
            return 12

        registry.register_stub("sheets", confused)
        run = make_run(["sheets"])

        outcome = await executor.run(run, run.steps[0], RetryPolicy(max_attempts=1))

        assert outcome.failed
        assert "unsupported result type" in run.steps[0].error

    @pytest.mark.asyncio
    async def test_records_metrics(self, registry, bus, memory, sleep, make_run):
        collector = MetricsCollector()
        executor = StepExecutor(registry=registry, bus=bus, memory=memory, sleep=sleep, metrics=collector)
        registry.register_stub("slack", ScriptedTool(fail_times=1))
        run = make_run(["slack"])

        await executor.run(run, run.steps[0], RetryPolicy(max_attempts=2, base_backoff_ms=0))

        summary = collector.get_metrics_summary()
        assert summary["step.retries"] == 1
        assert summary["step.done"] == 1
        assert summary["latency.step.invoke"]["count"] == 1
