from typing import Dict, Any, Optional, List, Literal
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum

from octopus.domain.models.run_state import Message


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    """WebSocket event types"""
    RUN_MESSAGE = "run_message"
    CONNECTION = "connection"
    ERROR = "error"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket frames"""
    type: EventType
    timestamp: datetime = Field(default_factory=_utcnow)
    run_id: Optional[str] = None


class RunMessageEvent(BaseEvent):
    """One message from the run's event stream"""
    type: Literal[EventType.RUN_MESSAGE] = EventType.RUN_MESSAGE
    payload: Message

    @classmethod
    def wrap(cls, message: Message) -> "RunMessageEvent":
        return cls(run_id=message.run_id, payload=message)


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected"]


class CreateRunRequest(BaseModel):
    """Body of POST /runs"""
    instruction: str = ""
    tools: List[str] = Field(default_factory=list)
    file_id: Optional[str] = Field(None, alias="fileId")

    model_config = {"populate_by_name": True}


class CreateRunResponse(BaseModel):
    id: str


class ExecuteRunResponse(BaseModel):
    ok: bool = True
