from typing import Dict, Any, Optional, Callable, Awaitable
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class ToolKind(str, Enum):
    """Which implementation a tool name resolved to"""
    PRIMARY = "primary"
    REAL = "real"
    STUB = "stub"


class ToolContext(BaseModel):
    """Everything a tool sees when invoked"""
    run_id: str
    owner_id: str
    instruction: str
    memory: Dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """Normalized tool output"""
    model_config = ConfigDict(populate_by_name=True)

    link: Optional[str] = None
    payload: Optional[Any] = None
    memory_patch: Optional[Dict[str, Any]] = Field(default=None, alias="memoryPatch")

    @classmethod
    def from_raw(cls, raw: Any) -> "ToolResult":
        """Accept a ToolResult, a mapping (camelCase or snake_case) or None"""

        if raw is None:
            return cls()
        if isinstance(raw, ToolResult):
            return raw
        if isinstance(raw, dict):
            return cls(
                link=raw.get("link"),
                payload=raw.get("payload"),
                memory_patch=raw.get("memoryPatch", raw.get("memory_patch")),
            )
        raise TypeError(f"tool returned unsupported result type: {type(raw).__name__}")


ToolHandler = Callable[[ToolContext], Awaitable[Any]]
