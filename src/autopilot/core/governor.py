"""Budget governance for goals and plans.

The governor is a pure function of the current counters and limits: it
holds no state between calls. The only input fetched on demand is the
provider usage summary, which is best-effort and never blocks on failure.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .goal import Goal
from .notifications import format_duration
from .plan import Plan
from .usage import NullUsageSource, UsageSummary, UsageSummarySource

logger = logging.getLogger(__name__)

# Non-blocking warning once any budget is 80% consumed
BUDGET_WARNING_THRESHOLD = 0.8

# (allowed, reason_or_warning)
CheckResult = Tuple[bool, str]


class BlockKind(str, Enum):
    """Why the governor blocked. Decides which terminal status applies."""
    BUDGET = "budget"
    PROVIDER_USAGE = "provider_usage"
    CIRCUIT_BREAKER = "circuit_breaker"
    STALL = "stall"

    @property
    def exhausts_budget(self) -> bool:
        return self in (BlockKind.BUDGET, BlockKind.PROVIDER_USAGE)


@dataclass
class GovernanceReport:
    """Outcome of one governance pass.

    Checks run in a fixed order and the first blocking check ends the
    pass, so ``checks`` only lists what actually ran.
    """
    checks: Dict[str, bool] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    kind: Optional[BlockKind] = None

    @property
    def allowed(self) -> bool:
        return self.kind is None

    def add_check(self, name: str, passed: bool) -> None:
        self.checks[name] = passed

    def block(self, name: str, kind: BlockKind, reason: str) -> None:
        self.checks[name] = False
        self.kind = kind
        self.reason = reason

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def __str__(self) -> str:
        if self.allowed:
            return "allowed" + (f" ({'; '.join(self.warnings)})" if self.warnings else "")
        return f"blocked [{self.kind.value}]: {self.reason}"


def _ratio_check(label: str, used: float, limit: float, render=str) -> Tuple[bool, Optional[str]]:
    """Blocks at ``used >= limit``; returns a warning at 80%."""
    if used >= limit:
        return False, f"{label} budget exceeded ({render(used)}/{render(limit)})"
    ratio = used / limit if limit > 0 else 0.0
    if ratio >= BUDGET_WARNING_THRESHOLD:
        return True, f"{label} budget at {round(ratio * 100)}% ({render(used)}/{render(limit)})"
    return True, None


def check_provider_usage(summary: Optional[UsageSummary], threshold: float) -> CheckResult:
    if summary is None:
        return True, ""
    for provider in summary.providers:
        for window in provider.windows:
            if window.used_percent >= threshold:
                return False, f"Provider usage at {window.used_percent:g}% (threshold: {threshold:g}%)"
    return True, ""


def check_circuit_breaker(goal: Goal) -> CheckResult:
    errors = goal.usage.consecutive_errors
    limit = goal.eval_config.consecutive_error_limit
    if errors >= limit:
        return False, f"Circuit breaker tripped: {errors} consecutive errors (limit: {limit})"
    return True, ""


def check_stall(goal: Goal) -> CheckResult:
    """Blocks when the last N scores moved less than the minimum delta between each pair.

    Needs at least ``stall_threshold`` scores; with fewer it always passes.
    """
    window = goal.eval_config.stall_threshold
    delta = goal.eval_config.min_progress_delta
    scores = goal.evaluation_scores
    if len(scores) < window:
        return True, ""

    recent = scores[-window:]
    flat = all(abs(b - a) < delta for a, b in zip(recent, recent[1:]))
    if flat:
        return False, (
            f"Stall detected: last {window} evaluations show < {delta:g} point progress "
            f"(scores: {', '.join(str(s) for s in recent)})"
        )
    return True, ""


def evaluate_goal(
    goal: Goal,
    usage_summary: Optional[UsageSummary] = None,
    now: Optional[datetime] = None,
) -> GovernanceReport:
    """Run every goal check in order; the first block short-circuits the rest."""
    report = GovernanceReport()
    budget, usage = goal.budget, goal.usage

    budget_checks = [
        ("iterations", "Iteration", usage.iterations, budget.max_iterations, str),
        ("tokens", "Token", usage.total_tokens, budget.max_tokens, str),
        ("time", "Time", usage.elapsed_seconds(now), budget.max_time_seconds, format_duration),
    ]
    for name, label, used, limit, render in budget_checks:
        ok, message = _ratio_check(label, used, limit, render)
        if not ok:
            report.block(name, BlockKind.BUDGET, message)
            return report
        report.add_check(name, True)
        if message:
            report.add_warning(message)

    ok, message = check_provider_usage(usage_summary, budget.provider_usage_threshold)
    if not ok:
        report.block("provider_usage", BlockKind.PROVIDER_USAGE, message)
        return report
    report.add_check("provider_usage", True)

    ok, message = check_circuit_breaker(goal)
    if not ok:
        report.block("circuit_breaker", BlockKind.CIRCUIT_BREAKER, message)
        return report
    report.add_check("circuit_breaker", True)

    ok, message = check_stall(goal)
    if not ok:
        report.block("stall", BlockKind.STALL, message)
        return report
    report.add_check("stall", True)

    return report


def evaluate_plan(
    plan: Plan,
    usage_summary: Optional[UsageSummary] = None,
    now: Optional[datetime] = None,
) -> GovernanceReport:
    """Plan checks: agent turns instead of iterations, no circuit breaker or stall."""
    report = GovernanceReport()
    budget, usage = plan.budget, plan.usage

    budget_checks = [
        ("agent_turns", "Agent turn", usage.agent_turns, budget.max_agent_turns, str),
        ("tokens", "Token", usage.total_tokens, budget.max_tokens, str),
        ("time", "Time", usage.elapsed_seconds(now), budget.max_time_seconds, format_duration),
    ]
    for name, label, used, limit, render in budget_checks:
        ok, message = _ratio_check(label, used, limit, render)
        if not ok:
            report.block(name, BlockKind.BUDGET, message)
            return report
        report.add_check(name, True)
        if message:
            report.add_warning(message)

    ok, message = check_provider_usage(usage_summary, budget.provider_usage_threshold)
    if not ok:
        report.block("provider_usage", BlockKind.PROVIDER_USAGE, message)
        return report
    report.add_check("provider_usage", True)

    return report


def is_quality_gate_due(goal: Goal) -> bool:
    """True when the next iteration to run has a configured gate."""
    return goal.quality_gate_for(goal.usage.iterations + 1) is not None


class BudgetGovernor:
    """Binds the pure checks to a provider usage source."""

    def __init__(self, usage_source: Optional[UsageSummarySource] = None):
        self.usage_source = usage_source or NullUsageSource()

    async def _load_usage(self) -> Optional[UsageSummary]:
        try:
            return await self.usage_source.load_usage_summary()
        except Exception as e:
            # Stale or missing provider data never blocks execution
            logger.debug(f"Provider usage summary unavailable: {e}")
            return None

    async def check_goal(self, goal: Goal) -> GovernanceReport:
        return evaluate_goal(goal, await self._load_usage(), datetime.now(UTC))

    async def check_plan(self, plan: Plan) -> GovernanceReport:
        return evaluate_plan(plan, await self._load_usage(), datetime.now(UTC))
