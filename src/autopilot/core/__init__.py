"""Core models and configuration."""

from .config import OrchestratorConfig, load_config
from .goal import Goal, GoalStatus
from .plan import Plan, PlanStatus, PlanTask, PlanTaskStatus

__all__ = [
    "Goal",
    "GoalStatus",
    "Plan",
    "PlanStatus",
    "PlanTask",
    "PlanTaskStatus",
    "OrchestratorConfig",
    "load_config",
]
