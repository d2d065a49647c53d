from typing import Dict, Any, Callable, Sequence, Set, Protocol, runtime_checkable
import asyncio
import structlog

from octopus.domain.errors import PersistenceError
from octopus.domain.models.run_state import Message, Run, Step

logger = structlog.get_logger(__name__)


@runtime_checkable
class PersistencePort(Protocol):
    """Durable run history; every call is best effort"""

    async def save_run_meta(self, run: Run) -> None: ...

    async def save_step(self, run_id: str, step: Step) -> None: ...

    async def append_log(self, run_id: str, entry: Dict[str, Any]) -> None: ...

    async def finalize_run(self, run: Run) -> None: ...


class NullPersistence:
    """Port that stores nothing"""

    async def save_run_meta(self, run: Run) -> None:
        return None

    async def save_step(self, run_id: str, step: Step) -> None:
        return None

    async def append_log(self, run_id: str, entry: Dict[str, Any]) -> None:
        return None

    async def finalize_run(self, run: Run) -> None:
        return None


class PersistenceHooks:
    """Fire-and-forget dispatch of lifecycle writes to a persistence port"""

    def __init__(self, port: PersistencePort = None):
        self.port = port or NullPersistence()
        self._pending: Set[asyncio.Task] = set()
        self.failures = 0

    def _dispatch(self, operations: Sequence[str], capture: Callable[[], tuple]):
        """Capture arguments now, write them in the background"""

        try:
            args = capture()
        except Exception as e:
            for operation in operations:
                self._skip(operation, e)
            return
        for operation in operations:
            task = asyncio.create_task(self._guarded(operation, *args))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _guarded(self, operation: str, *args):
        try:
            await getattr(self.port, operation)(*args)
        except Exception as e:
            self._skip(operation, e)

    def _skip(self, operation: str, cause: Exception):
        self.failures += 1
        error = PersistenceError(operation, cause)
        logger.warning("Persistence write skipped", operation=operation, error=str(error))

    def on_run_start(self, run: Run):
        self._dispatch(["save_run_meta"], lambda: (run.snapshot(),))

    def on_step_start(self, run_id: str, step: Step):
        self._dispatch(["save_step"], lambda: (run_id, step.snapshot()))

    def on_step_end(self, run_id: str, step: Step):
        self._dispatch(["save_step"], lambda: (run_id, step.snapshot()))

    def on_message(self, message: Message):
        self._dispatch(["append_log"], lambda: (message.run_id, {
            "ts": message.ts,
            "from": message.sender,
            "type": message.type.value,
            "payload": message.payload,
        }))

    def on_run_end(self, run: Run):
        self._dispatch(["finalize_run", "save_run_meta"], lambda: (run.snapshot(),))

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self):
        """Wait for outstanding writes"""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
