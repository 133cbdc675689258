"""Goal model: a single-focus execution refined one iteration at a time."""

from datetime import UTC, datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from ..errors import InvalidTransitionError


class GoalStatus(str, Enum):
    """Goal status values."""
    PENDING = "pending"
    RUNNING = "running"
    EVALUATING = "evaluating"
    PAUSED = "paused"  # Waiting on a quality gate approval
    COMPLETED = "completed"
    BUDGET_EXCEEDED = "budget_exceeded"
    STOPPED = "stopped"
    FAILED = "failed"


# completed/failed never change again; stopped/budget_exceeded may be resumed
TERMINAL_GOAL_STATUSES: FrozenSet[str] = frozenset({GoalStatus.COMPLETED, GoalStatus.FAILED})
HALTED_GOAL_STATUSES: FrozenSet[str] = frozenset({
    GoalStatus.COMPLETED, GoalStatus.FAILED, GoalStatus.STOPPED, GoalStatus.BUDGET_EXCEEDED,
})
ACTIVE_GOAL_STATUSES: FrozenSet[str] = frozenset({GoalStatus.RUNNING, GoalStatus.EVALUATING})

_GOAL_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    GoalStatus.PENDING: frozenset({GoalStatus.RUNNING, GoalStatus.STOPPED, GoalStatus.FAILED}),
    GoalStatus.RUNNING: frozenset({
        GoalStatus.EVALUATING, GoalStatus.PAUSED, GoalStatus.COMPLETED,
        GoalStatus.BUDGET_EXCEEDED, GoalStatus.STOPPED, GoalStatus.FAILED,
    }),
    GoalStatus.EVALUATING: frozenset({
        GoalStatus.RUNNING, GoalStatus.COMPLETED, GoalStatus.BUDGET_EXCEEDED,
        GoalStatus.STOPPED, GoalStatus.FAILED,
    }),
    GoalStatus.PAUSED: frozenset({GoalStatus.RUNNING, GoalStatus.STOPPED, GoalStatus.FAILED}),
    GoalStatus.STOPPED: frozenset({GoalStatus.PENDING, GoalStatus.RUNNING}),
    GoalStatus.BUDGET_EXCEEDED: frozenset({GoalStatus.PENDING, GoalStatus.RUNNING}),
    GoalStatus.COMPLETED: frozenset(),
    GoalStatus.FAILED: frozenset(),
}


class ApprovalDecision(str, Enum):
    """Outcome of a quality gate wait."""
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


class GoalBudget(BaseModel):
    """Resource limits for one goal."""
    max_iterations: int = 50
    max_tokens: int = 1_000_000
    max_time_seconds: float = 4 * 60 * 60
    provider_usage_threshold: float = 80.0  # percent of any provider window


class GoalEvalConfig(BaseModel):
    """How often and how strictly progress is evaluated."""
    eval_every: int = 5
    eval_model: Optional[str] = None  # None = executor default
    stall_threshold: int = 3
    min_progress_delta: float = 5.0
    consecutive_error_limit: int = 5

    @field_validator('eval_every', 'stall_threshold', 'consecutive_error_limit')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v


class NotifyTarget(BaseModel):
    """Channel and recipient for human-facing messages."""
    channel: str
    recipient: str
    account_id: Optional[str] = None


class QualityGate(BaseModel):
    """Pause for explicit approval before this iteration starts."""
    at_iteration: int
    message: Optional[str] = None


class GoalUsage(BaseModel):
    """Cumulative resource usage across all iterations."""
    iterations: int = 0
    total_tokens: int = 0
    errors: int = 0
    consecutive_errors: int = 0
    started_at: Optional[datetime] = None

    @field_serializer("started_at")
    def serialize_datetime(self, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    def elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        if self.started_at is None:
            return 0.0
        return ((now or datetime.now(UTC)) - self.started_at).total_seconds()


class CriterionStatus(BaseModel):
    """Whether one acceptance criterion is satisfied."""
    criterion: str
    met: bool = False
    notes: Optional[str] = None


class EvaluationVerdict(BaseModel):
    """Structured verdict from the progress evaluator.

    ``source`` tags whether the verdict was decoded from the evaluator's
    output or is the deterministic fallback used when decoding failed.
    """
    progress_score: int
    assessment: str
    criteria_status: List[CriterionStatus] = Field(default_factory=list)
    should_continue: bool = True
    suggested_next_action: Optional[str] = None
    source: Literal["parsed", "fallback"] = "parsed"

    @property
    def unmet_criteria(self) -> List[CriterionStatus]:
        return [c for c in self.criteria_status if not c.met]


class Goal(BaseModel):
    """Full persisted state of a goal."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str
    goal: str
    criteria: List[str] = Field(default_factory=list)
    status: GoalStatus = GoalStatus.PENDING

    budget: GoalBudget = Field(default_factory=GoalBudget)
    eval_config: GoalEvalConfig = Field(default_factory=GoalEvalConfig)
    notify: Optional[NotifyTarget] = None
    quality_gates: List[QualityGate] = Field(default_factory=list)
    approved_gates: List[int] = Field(default_factory=list)
    usage: GoalUsage = Field(default_factory=GoalUsage)
    agent_id: Optional[str] = None

    last_evaluation: Optional[EvaluationVerdict] = None
    last_suggested_action: Optional[str] = None
    evaluation_scores: List[int] = Field(default_factory=list)
    stop_reason: Optional[str] = None

    # Written by an out-of-process approve/reject while the goal is paused
    pending_approval: Optional[ApprovalDecision] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_serializer("created_at", "updated_at")
    def serialize_datetime(self, v: datetime) -> str:
        return v.isoformat()

    @property
    def is_terminal(self) -> bool:
        return GoalStatus(self.status) in TERMINAL_GOAL_STATUSES

    @property
    def is_active(self) -> bool:
        return GoalStatus(self.status) in ACTIVE_GOAL_STATUSES

    def can_transition_to(self, status: GoalStatus) -> bool:
        if status == self.status:
            return True
        return GoalStatus(status) in _GOAL_TRANSITIONS[GoalStatus(self.status)]

    def transition_to(self, status: GoalStatus, reason: Optional[str] = None) -> None:
        """Move along the goal state machine, recording ``reason`` if given."""
        if not self.can_transition_to(status):
            raise InvalidTransitionError(self.id, GoalStatus(self.status).value, GoalStatus(status).value)
        self.status = GoalStatus(status).value
        if reason is not None:
            self.stop_reason = reason

    def quality_gate_for(self, iteration: int) -> Optional[QualityGate]:
        """Unapproved gate configured for ``iteration``, if any."""
        if iteration in self.approved_gates:
            return None
        return next((g for g in self.quality_gates if g.at_iteration == iteration), None)

    def session_key(self) -> str:
        return f"goal:{self.id}"

    def eval_session_key(self) -> str:
        return f"goal-eval:{self.id}"


class IterationRecord(BaseModel):
    """Line in a goal's iterations.jsonl."""
    goal_id: str
    iteration: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    status: Literal["ok", "error", "skipped"]
    summary: Optional[str] = None
    output_text: Optional[str] = None
    error: Optional[str] = None
    tokens: int = 0
    duration_ms: int = 0


class EvaluationRecord(BaseModel):
    """Line in a goal's evaluations.jsonl."""
    goal_id: str
    iteration: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    result: EvaluationVerdict
    duration_ms: int = 0
