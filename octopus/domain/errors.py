"""
Error taxonomy for run orchestration.

Only RunNotFound (and bad input to create_run) escapes the orchestrator.
Step-level failures are recorded on the step; persistence failures are
logged and dropped.
"""

from typing import Optional


class OrchestrationError(Exception):
    """Base class for orchestration errors"""


class RunNotFound(OrchestrationError):
    def __init__(self, run_id: str):
        super().__init__(f"run not found: {run_id}")
        self.run_id = run_id


class UnknownTool(OrchestrationError):
    """No real, primary or stub entry is registered for the name"""

    def __init__(self, tool: str):
        super().__init__(f"Unknown agent: {tool}")
        self.tool = tool


class ResolutionError(OrchestrationError):
    """Eligibility check or real-handler load failed; the registry falls back to the stub"""

    def __init__(self, tool: str, reason: str):
        super().__init__(f"cannot resolve real handler for {tool}: {reason}")
        self.tool = tool
        self.reason = reason


class InvocationError(OrchestrationError):
    def __init__(self, tool: str, attempt: int, cause: Optional[BaseException] = None):
        message = str(cause) if cause is not None and str(cause) else "Unknown error"
        super().__init__(message)
        self.tool = tool
        self.attempt = attempt
        self.cause = cause


class PersistenceError(OrchestrationError):
    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"{operation} skipped: {cause}")
        self.operation = operation
        self.cause = cause


class InvalidTransition(OrchestrationError):
    def __init__(self, step_id: str, from_status: str, to_status: str):
        super().__init__(f"step {step_id}: illegal transition {from_status} -> {to_status}")
        self.step_id = step_id
        self.from_status = from_status
        self.to_status = to_status
