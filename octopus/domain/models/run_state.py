from typing import Dict, Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from enum import Enum
import copy
import random
import string
import time

from octopus.domain.errors import InvalidTransition


SUPERVISOR = "supervisor"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def detached(value: Any) -> Any:
    """Deep copy of plain data; values that cannot be copied (clients, locks) are shared"""

    if type(value) is dict:
        return {key: detached(item) for key, item in value.items()}
    if type(value) in (list, tuple):
        return type(value)([detached(item) for item in value])
    try:
        return copy.deepcopy(value)
    except Exception:
        return value


def new_run_id() -> str:
    """Epoch milliseconds plus a short random suffix"""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{int(time.time() * 1000)}-{suffix}"


class StepStatus(str, Enum):
    """Step execution status"""
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.DONE, StepStatus.FAILED)


class RunStatus(str, Enum):
    """Run execution status"""
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_ERRORS, RunStatus.FAILED)


class MessageType(str, Enum):
    """Event types published on the run bus"""
    ACTION_REQUEST = "action_request"
    ACTION_RESULT = "action_result"
    INFO = "info"
    ERROR = "error"


# running -> running is the re-entry edge for a step left behind by an
# interrupted execution.
_ALLOWED_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.RUNNING},
    StepStatus.RUNNING: {StepStatus.RUNNING, StepStatus.DONE, StepStatus.FAILED},
    StepStatus.DONE: set(),
    StepStatus.FAILED: set(),
}


class Message(BaseModel):
    """Immutable event envelope"""
    model_config = ConfigDict(frozen=True)

    run_id: str
    sender: str = Field(description="'supervisor' or a tool name")
    type: MessageType
    payload: Dict[str, Any] = Field(default_factory=dict)
    ts: datetime = Field(default_factory=utcnow)

    @classmethod
    def create(cls, run_id: str, sender: str, type: MessageType, payload: Optional[Dict[str, Any]] = None) -> "Message":
        return cls(run_id=run_id, sender=sender, type=type, payload=payload or {})


class Step(BaseModel):
    """One tool invocation within a run"""
    id: str = Field(description="'<tool>-<index>'")
    tool: str
    status: StepStatus = Field(default=StepStatus.PENDING)
    link: Optional[str] = None
    error: Optional[str] = None
    payload: Optional[Any] = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def transition(self, status: StepStatus):
        """Move the step along pending -> running -> {done | failed}"""
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(self.id, self.status.value, status.value)
        self.status = status
        self.updated_at = utcnow()

    def snapshot(self) -> "Step":
        return self.model_copy(update={"payload": detached(self.payload)})


class Run(BaseModel):
    """One end-to-end execution of an instruction across ordered tool steps"""
    id: str = Field(default_factory=new_run_id)
    owner_id: str
    instruction: str
    steps: List[Step] = Field(default_factory=list)
    memory: Dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = Field(default=RunStatus.CREATED)
    log: List[Message] = Field(default_factory=list)
    source_file_id: Optional[str] = None
    source_file_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        owner_id: str,
        instruction: str,
        tools: List[str],
        source_file_id: Optional[str] = None,
        source_file_url: Optional[str] = None
    ) -> "Run":
        """Build a fresh run with one pending step per tool name"""

        steps = [Step(id=f"{tool}-{idx}", tool=tool) for idx, tool in enumerate(tools)]
        memory = {"fileUrl": source_file_url} if source_file_url else {}
        return cls(
            owner_id=owner_id,
            instruction=instruction,
            steps=steps,
            memory=memory,
            source_file_id=source_file_id,
            source_file_url=source_file_url,
        )

    def update_status(self, status: RunStatus):
        self.status = status
        if status.is_terminal:
            self.completed_at = utcnow()

    def failed_steps(self) -> List[Step]:
        return [s for s in self.steps if s.status == StepStatus.FAILED]

    def snapshot(self) -> "Run":
        """Detached copy handed to readers"""
        return self.model_copy(update={
            "steps": [s.snapshot() for s in self.steps],
            "memory": detached(self.memory),
            "log": [m.model_copy(update={"payload": detached(m.payload)}) for m in self.log],
        })
