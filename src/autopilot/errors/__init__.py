"""Exception hierarchy for the orchestration core."""

from typing import List, Optional


class AutopilotError(Exception):
    """Base class for all orchestrator errors."""


class ConfigError(AutopilotError):
    """Configuration file is missing required values or is inconsistent."""


class PersistenceError(AutopilotError):
    """Aggregate state document could not be written.

    The previous document is left intact when this is raised.
    """


class ExecutionNotFoundError(AutopilotError):
    """No goal or plan with the requested id exists."""

    def __init__(self, kind: str, execution_id: str):
        super().__init__(f"{kind} not found: {execution_id}")
        self.kind = kind
        self.execution_id = execution_id


class InvalidTransitionError(AutopilotError):
    """A status change that the execution state machine does not allow."""

    def __init__(self, execution_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Invalid transition for {execution_id}: {from_status} -> {to_status}"
        )
        self.execution_id = execution_id
        self.from_status = from_status
        self.to_status = to_status


class DagValidationError(AutopilotError):
    """Task graph has cycles, dangling dependencies or duplicate ids."""

    def __init__(self, problems: List[str]):
        super().__init__("Invalid task graph: " + "; ".join(problems))
        self.problems = problems


class DecompositionError(AutopilotError):
    """Planner or replanner could not produce a valid task graph."""

    def __init__(self, message: str, attempts: Optional[int] = None):
        super().__init__(message)
        self.attempts = attempts


__all__ = [
    "AutopilotError",
    "ConfigError",
    "PersistenceError",
    "ExecutionNotFoundError",
    "InvalidTransitionError",
    "DagValidationError",
    "DecompositionError",
]
