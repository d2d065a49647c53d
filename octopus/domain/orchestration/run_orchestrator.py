from typing import TypedDict, Dict, Any, List, Literal, Optional, TYPE_CHECKING
from langgraph.graph import StateGraph, END
import asyncio
import structlog

from octopus.domain.context.memory.run_memory import RunMemory
from octopus.domain.context.state.run_repository import RunRepository
from octopus.domain.events.event_bus import EventBus
from octopus.domain.models.run_state import Message, MessageType, Run, RunStatus, Step, StepStatus, SUPERVISOR
from octopus.domain.orchestration.step_executor import RetryPolicy, Sleep, StepExecutor
from octopus.domain.tool.tool_registry import PRIMARY_TOOL, ToolRegistry
from octopus.infrastructure.observability.logging import metrics, run_logger
from octopus.infrastructure.persistence.hooks import PersistenceHooks

if TYPE_CHECKING:
    from octopus.core.config import Settings

logger = structlog.get_logger(__name__)


class ExecutionState(TypedDict):
    """Graph state; the run itself stays in the repository"""
    run_id: str
    cursor: int
    any_failed: bool
    aborted: bool


def primary_first(steps: List[Step]) -> List[Step]:
    """Move the primary tool's step to the front, keeping the rest in order"""

    for idx, step in enumerate(steps):
        if step.tool == PRIMARY_TOOL:
            if idx == 0:
                return list(steps)
            return [step] + steps[:idx] + steps[idx + 1:]
    return list(steps)


class RunOrchestrator:
    """Sequences step executions across a run and decides continue vs abort"""

    def __init__(
        self,
        repository: RunRepository,
        registry: ToolRegistry,
        bus: Optional[EventBus] = None,
        hooks: Optional[PersistenceHooks] = None,
        policy: Optional[RetryPolicy] = None,
        continue_on_error: bool = True,
        sleep: Sleep = asyncio.sleep
    ):
        self.repository = repository
        self.registry = registry
        self.bus = bus or EventBus(repository)
        self.memory = RunMemory(repository)
        self.hooks = hooks or PersistenceHooks()
        self.policy = policy or RetryPolicy()
        self.continue_on_error = continue_on_error
        self.step_executor = StepExecutor(
            registry=registry,
            bus=self.bus,
            memory=self.memory,
            hooks=self.hooks,
            sleep=sleep
        )
        self.workflow = self._create_workflow()

    @classmethod
    def from_settings(cls, settings: "Settings", repository: RunRepository, registry: ToolRegistry, **kwargs) -> "RunOrchestrator":
        return cls(
            repository=repository,
            registry=registry,
            policy=settings.retry_policy(),
            continue_on_error=settings.continue_on_error,
            **kwargs
        )

    def _create_workflow(self):
        """prepare -> execute_step (loop) -> finalize"""

        workflow = StateGraph(ExecutionState)

        workflow.add_node("prepare", self.prepare_node)
        workflow.add_node("execute_step", self.execute_step_node)
        workflow.add_node("finalize", self.finalize_node)

        workflow.set_entry_point("prepare")

        workflow.add_conditional_edges(
            "prepare",
            self.route_next,
            {"next_step": "execute_step", "finalize": "finalize"}
        )
        workflow.add_conditional_edges(
            "execute_step",
            self.route_next,
            {"next_step": "execute_step", "finalize": "finalize"}
        )
        workflow.add_edge("finalize", END)

        return workflow.compile()

    # -- inbound operations --

    def create_run(
        self,
        owner_id: str,
        instruction: str,
        tools: List[str],
        source_file_id: Optional[str] = None,
        source_file_url: Optional[str] = None
    ) -> str:
        """Register a new run and return its id"""

        if not instruction or not instruction.strip():
            raise ValueError("instruction is required")
        if not tools:
            raise ValueError("at least one tool is required")

        run = Run.create(
            owner_id=owner_id,
            instruction=instruction,
            tools=list(tools),
            source_file_id=source_file_id,
            source_file_url=source_file_url
        )
        self.repository.put(run)
        logger.info("Run created", run_id=run.id, owner_id=owner_id, tools=list(tools))
        return run.id

    def get_run(self, run_id: str) -> Run:
        """Snapshot of a run; raises RunNotFound"""

        return self.repository.get(run_id).snapshot()

    async def execute(self, run_id: str) -> Run:
        """Execute the run's remaining steps and return the final snapshot"""

        run = self.repository.get(run_id)
        async with self.repository.lock(run_id):
            if run.status.is_terminal:
                logger.info("Run already finished", run_id=run_id, status=run.status.value)
                return run.snapshot()

            unsubscribe = self.bus.subscribe(run_id, self.hooks.on_message)
            try:
                with structlog.contextvars.bound_contextvars(run_id=run_id):
                    await self.workflow.ainvoke(
                        {"run_id": run_id, "cursor": 0, "any_failed": False, "aborted": False},
                        config={"recursion_limit": 2 * len(run.steps) + 10}
                    )
            finally:
                unsubscribe()
            return run.snapshot()

    # -- graph nodes --

    async def prepare_node(self, state: ExecutionState) -> Dict[str, Any]:
        run = self.repository.get(state["run_id"])
        previous = run.status

        run.steps = primary_first(run.steps)
        run.update_status(RunStatus.RUNNING)
        run_logger.log_run_transition(run.id, previous.value, run.status.value, {"steps": len(run.steps)})
        self.hooks.on_run_start(run)

        return {"cursor": 0, "any_failed": False, "aborted": False}

    async def execute_step_node(self, state: ExecutionState) -> Dict[str, Any]:
        run = self.repository.get(state["run_id"])
        step = run.steps[state["cursor"]]
        any_failed = state["any_failed"]
        aborted = state["aborted"]

        if step.status == StepStatus.DONE:
            logger.debug("Skipping finished step", run_id=run.id, step_id=step.id)
        else:
            outcome = await self.step_executor.run(run, step, self.policy)
            if outcome.failed:
                any_failed = True
                if not self.continue_on_error:
                    logger.warning("Aborting run after failed step", run_id=run.id, step_id=step.id)
                    aborted = True

        return {"cursor": state["cursor"] + 1, "any_failed": any_failed, "aborted": aborted}

    async def finalize_node(self, state: ExecutionState) -> Dict[str, Any]:
        run = self.repository.get(state["run_id"])

        if state["aborted"]:
            final = RunStatus.FAILED
        elif state["any_failed"]:
            final = RunStatus.COMPLETED_WITH_ERRORS
        else:
            final = RunStatus.COMPLETED

        # last log entry before the run becomes immutable
        await self.bus.publish(run.id, Message.create(run.id, SUPERVISOR, MessageType.INFO, {
            "level": "info",
            "status": final.value,
            "message": f"run finished: {final.value}",
        }))
        run.update_status(final)
        run_logger.log_run_transition(
            run.id, RunStatus.RUNNING.value, final.value,
            {"failed_steps": [s.id for s in run.failed_steps()]}
        )
        metrics.increment_counter(f"run.{final.value}")
        self.hooks.on_run_end(run)

        return {"aborted": state["aborted"]}

    def route_next(self, state: ExecutionState) -> Literal["next_step", "finalize"]:
        if state["aborted"]:
            return "finalize"
        run = self.repository.get(state["run_id"])
        if state["cursor"] < len(run.steps):
            return "next_step"
        return "finalize"
