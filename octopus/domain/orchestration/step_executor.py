from typing import Any, Awaitable, Callable, Optional
from pydantic import BaseModel, ConfigDict, Field
import asyncio
import time
import structlog

from octopus.domain.context.memory.run_memory import RunMemory
from octopus.domain.errors import InvocationError, UnknownTool
from octopus.domain.events.event_bus import EventBus
from octopus.domain.models.run_state import Message, MessageType, Run, Step, StepStatus, SUPERVISOR
from octopus.domain.tool.models import ToolContext, ToolResult
from octopus.domain.tool.tool_registry import PRIMARY_TOOL, ToolRegistry
from octopus.infrastructure.observability.logging import MetricsCollector, metrics as default_metrics, run_logger
from octopus.infrastructure.persistence.hooks import PersistenceHooks

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class RetryPolicy(BaseModel):
    """Capped retry with exponential backoff"""
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=2, ge=1)
    base_backoff_ms: int = Field(default=600, ge=0)

    def backoff_ms(self, failed_attempt: int) -> int:
        """Wait after the n-th failed attempt (1-based)"""
        return self.base_backoff_ms * 2 ** (failed_attempt - 1)


class StepOutcome(BaseModel):
    """What happened to one step"""
    step_id: str
    tool: str
    status: StepStatus
    attempts: int = 0
    link: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED


class StepExecutor:
    """Drives one step to done or failed"""

    def __init__(
        self,
        registry: ToolRegistry,
        bus: EventBus,
        memory: RunMemory,
        hooks: Optional[PersistenceHooks] = None,
        sleep: Sleep = asyncio.sleep,
        metrics: Optional[MetricsCollector] = None
    ):
        self.registry = registry
        self.bus = bus
        self.memory = memory
        self.hooks = hooks or PersistenceHooks()
        self.sleep = sleep
        self.metrics = metrics or default_metrics

    async def run(self, run: Run, step: Step, policy: RetryPolicy) -> StepOutcome:
        """Execute a step with retries; step-level failures are recorded, never raised"""

        if step.status.is_terminal:
            return StepOutcome(
                step_id=step.id, tool=step.tool, status=step.status,
                attempts=step.attempts, link=step.link, error=step.error, skipped=True
            )

        step.transition(StepStatus.RUNNING)
        step.error = None
        step.attempts = 0
        self.hooks.on_step_start(run.id, step)

        await self._publish(run.id, SUPERVISOR, MessageType.ACTION_REQUEST, {"tool": step.tool, "step_id": step.id})

        # resolution failures are not retried
        try:
            resolved = await self.registry.resolve(step.tool, run.owner_id)
        except UnknownTool as e:
            logger.warning("Unknown tool", run_id=run.id, step_id=step.id, tool=step.tool)
            return await self._fail(run, step, str(e))

        last_error: Optional[InvocationError] = None
        while step.attempts < policy.max_attempts:
            step.attempts += 1
            attempt = step.attempts
            context = ToolContext(
                run_id=run.id,
                owner_id=run.owner_id,
                instruction=run.instruction,
                memory=self.memory.get(run.id)
            )
            started = time.monotonic()
            try:
                result = await resolved.invoke(context)
            except Exception as e:
                duration_ms = (time.monotonic() - started) * 1000
                last_error = InvocationError(step.tool, attempt, e)
                run_logger.log_step_attempt(
                    run.id, step.id, step.tool, attempt,
                    duration_ms=duration_ms, success=False, error=str(last_error)
                )
                if attempt < policy.max_attempts:
                    await self._wait_before_retry(run, step, policy, attempt, last_error)
                continue

            duration_ms = (time.monotonic() - started) * 1000
            self.metrics.record_latency("step.invoke", duration_ms, tags={"tool": step.tool, "kind": resolved.kind.value})
            run_logger.log_step_attempt(run.id, step.id, step.tool, attempt, duration_ms=duration_ms)
            return await self._succeed(run, step, result)

        return await self._fail(run, step, str(last_error) if last_error else "Unknown error")

    async def _wait_before_retry(self, run: Run, step: Step, policy: RetryPolicy, attempt: int, error: InvocationError):
        backoff = policy.backoff_ms(attempt)
        self.metrics.increment_counter("step.retries", tags={"tool": step.tool})
        await self._publish(run.id, SUPERVISOR, MessageType.INFO, {
            "level": "warn",
            "tool": step.tool,
            "step_id": step.id,
            "attempt": attempt,
            "backoff_ms": backoff,
            "message": f"retrying in {backoff}ms due to: {error}",
        })
        await self.sleep(backoff / 1000)

    async def _succeed(self, run: Run, step: Step, result: ToolResult) -> StepOutcome:
        if result.memory_patch:
            self.memory.patch(run.id, result.memory_patch)

        step.link = result.link or step.link or "#"
        # the primary tool always links back to the uploaded source file
        if step.tool == PRIMARY_TOOL and run.source_file_url:
            step.link = run.source_file_url
        step.payload = result.payload
        step.error = None
        step.transition(StepStatus.DONE)
        self.hooks.on_step_end(run.id, step)
        self.metrics.increment_counter("step.done", tags={"tool": step.tool})

        await self._publish(run.id, step.tool, MessageType.ACTION_RESULT, {"ok": True, "link": step.link})
        return StepOutcome(step_id=step.id, tool=step.tool, status=step.status, attempts=step.attempts, link=step.link)

    async def _fail(self, run: Run, step: Step, error: str) -> StepOutcome:
        step.error = error
        step.transition(StepStatus.FAILED)
        self.hooks.on_step_end(run.id, step)
        self.metrics.increment_counter("step.failed", tags={"tool": step.tool})

        await self._publish(run.id, step.tool, MessageType.ACTION_RESULT, {"ok": False, "error": error})
        await self._publish(run.id, SUPERVISOR, MessageType.ERROR, {
            "level": "error",
            "tool": step.tool,
            "step_id": step.id,
            "message": error,
        })
        return StepOutcome(step_id=step.id, tool=step.tool, status=step.status, attempts=step.attempts, error=error)

    async def _publish(self, run_id: str, sender: str, type: MessageType, payload: dict):
        await self.bus.publish(run_id, Message.create(run_id, sender, type, payload))
