"""Plan model: an objective decomposed into a dependency graph of tasks."""

from datetime import UTC, datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from ..errors import InvalidTransitionError
from .goal import CriterionStatus, NotifyTarget


class PlanStatus(str, Enum):
    """Plan status values."""
    PLANNING = "planning"
    EXECUTING = "executing"
    REPLANNING = "replanning"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class PlanTaskStatus(str, Enum):
    """Status of a single task inside a plan."""
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


ACTIVE_PLAN_STATUSES: FrozenSet[str] = frozenset({
    PlanStatus.PLANNING, PlanStatus.EXECUTING, PlanStatus.REPLANNING, PlanStatus.EVALUATING,
})
HALTED_PLAN_STATUSES: FrozenSet[str] = frozenset({
    PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.STOPPED,
})

_PLAN_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PlanStatus.PLANNING: frozenset({PlanStatus.EXECUTING, PlanStatus.FAILED, PlanStatus.STOPPED}),
    PlanStatus.EXECUTING: frozenset({
        PlanStatus.REPLANNING, PlanStatus.EVALUATING, PlanStatus.FAILED, PlanStatus.STOPPED,
    }),
    PlanStatus.REPLANNING: frozenset({PlanStatus.EXECUTING, PlanStatus.FAILED, PlanStatus.STOPPED}),
    PlanStatus.EVALUATING: frozenset({PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.STOPPED}),
    # Resume re-enters planning when no tasks exist yet, executing otherwise
    PlanStatus.FAILED: frozenset({PlanStatus.PLANNING, PlanStatus.EXECUTING}),
    PlanStatus.STOPPED: frozenset({PlanStatus.PLANNING, PlanStatus.EXECUTING}),
    PlanStatus.COMPLETED: frozenset(),
}


class TaskResult(BaseModel):
    """Outcome of one worker turn for a task."""
    status: Literal["ok", "error", "skipped"]
    summary: Optional[str] = None
    output_text: Optional[str] = None
    error: Optional[str] = None
    total_tokens: int = 0


class PlanTask(BaseModel):
    """A single unit of work in the DAG."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str
    title: str
    description: str = ""
    status: PlanTaskStatus = PlanTaskStatus.PENDING
    depends_on: List[str] = Field(default_factory=list)
    group: Optional[str] = None
    result: Optional[TaskResult] = None
    retries: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_serializer("started_at", "completed_at")
    def serialize_datetime(self, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    def is_(self, status: PlanTaskStatus) -> bool:
        return PlanTaskStatus(self.status) == status


class PlanBudget(BaseModel):
    """Resource limits shared by planning, workers, replanning and evaluation."""
    max_agent_turns: int = 50
    max_tokens: int = 500_000
    max_time_seconds: float = 60 * 60
    max_retries: int = 2
    max_concurrency: int = 3
    replan_threshold: float = 0.4  # batch failure rate that triggers replanning
    provider_usage_threshold: float = 80.0


class PlanUsage(BaseModel):
    """Cumulative resource usage for a plan."""
    agent_turns: int = 0
    total_tokens: int = 0
    errors: int = 0
    started_at: Optional[datetime] = None

    @field_serializer("started_at")
    def serialize_datetime(self, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    def elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        if self.started_at is None:
            return 0.0
        return ((now or datetime.now(UTC)) - self.started_at).total_seconds()


class PlanEvaluation(BaseModel):
    """Final score of the aggregate task results."""
    score: int
    assessment: str
    criteria_status: List[CriterionStatus] = Field(default_factory=list)
    suggestions: Optional[str] = None
    source: Literal["parsed", "fallback"] = "parsed"


class Plan(BaseModel):
    """Full persisted state of a plan."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str
    goal: str
    criteria: List[str] = Field(default_factory=list)
    status: PlanStatus = PlanStatus.PLANNING
    tasks: List[PlanTask] = Field(default_factory=list)
    budget: PlanBudget = Field(default_factory=PlanBudget)
    usage: PlanUsage = Field(default_factory=PlanUsage)
    notify: Optional[NotifyTarget] = None
    plan_revision: int = 0
    final_evaluation: Optional[PlanEvaluation] = None
    stop_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_serializer("created_at", "updated_at")
    def serialize_datetime(self, v: datetime) -> str:
        return v.isoformat()

    @property
    def is_active(self) -> bool:
        return PlanStatus(self.status) in ACTIVE_PLAN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return PlanStatus(self.status) == PlanStatus.COMPLETED

    def can_transition_to(self, status: PlanStatus) -> bool:
        if status == self.status:
            return True
        return PlanStatus(status) in _PLAN_TRANSITIONS[PlanStatus(self.status)]

    def transition_to(self, status: PlanStatus, reason: Optional[str] = None) -> None:
        if not self.can_transition_to(status):
            raise InvalidTransitionError(self.id, PlanStatus(self.status).value, PlanStatus(status).value)
        self.status = PlanStatus(status).value
        if reason is not None:
            self.stop_reason = reason

    def get_task(self, task_id: str) -> Optional[PlanTask]:
        return next((t for t in self.tasks if t.id == task_id), None)

    def tasks_with_status(self, status: PlanTaskStatus) -> List[PlanTask]:
        return [t for t in self.tasks if t.is_(status)]

    def planner_session_key(self) -> str:
        return f"planner:{self.id}"

    def worker_session_key(self, task_id: str) -> str:
        return f"planner-worker:{self.id}:{task_id}"

    def eval_session_key(self) -> str:
        return f"planner-eval:{self.id}"


class TaskTransitionRecord(BaseModel):
    """Line in a plan's tasks.jsonl."""
    plan_id: str
    task_id: str
    from_status: str
    to_status: str
    reason: Optional[str] = None
    revision: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class WorkerRunRecord(BaseModel):
    """Line in a plan's worker-runs.jsonl."""
    plan_id: str
    task_id: str
    attempt: int
    status: Literal["ok", "error", "skipped"]
    summary: Optional[str] = None
    error: Optional[str] = None
    tokens: int = 0
    duration_ms: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PlanEvaluationRecord(BaseModel):
    """Line in a plan's evaluations.jsonl (planning, replanning and final turns)."""
    plan_id: str
    phase: Literal["planning", "replanning", "final"]
    revision: int = 0
    task_count: Optional[int] = None
    result: Optional[PlanEvaluation] = None
    error: Optional[str] = None
    duration_ms: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
