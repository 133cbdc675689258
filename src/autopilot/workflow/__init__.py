"""Plan engine: DAG scheduling of decomposed tasks."""

from .dag import SchedulerState, analyze, skip_downstream, update_ready_tasks, validate_dag
from .plan_engine import PlanEngine

__all__ = [
    "SchedulerState",
    "analyze",
    "skip_downstream",
    "update_ready_tasks",
    "validate_dag",
    "PlanEngine",
]
