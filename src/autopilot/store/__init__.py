"""Persistence layer: aggregate state documents and append-only logs."""

from .execution_log import ExecutionLog, GoalLogs, PlanLogs
from .state_store import GoalStore, PlanStore, StateStore

__all__ = ["ExecutionLog", "GoalLogs", "PlanLogs", "GoalStore", "PlanStore", "StateStore"]
