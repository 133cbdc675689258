"""Tests for the budget governor checks."""

from datetime import UTC, datetime, timedelta

import pytest

from autopilot.core.goal import Goal, GoalBudget, GoalEvalConfig, QualityGate
from autopilot.core.governor import (
    BlockKind,
    BudgetGovernor,
    check_stall,
    evaluate_goal,
    evaluate_plan,
    is_quality_gate_due,
)
from autopilot.core.plan import Plan, PlanBudget
from autopilot.core.usage import ProviderUsage, UsageSummary, UsageWindow
from tests.fakes import StaticUsageSource


def _goal(**overrides) -> Goal:
    defaults = dict(
        id="goal-test",
        goal="Ship the feature",
        budget=GoalBudget(max_iterations=10, max_tokens=1000, max_time_seconds=3600),
        eval_config=GoalEvalConfig(stall_threshold=3, min_progress_delta=5, consecutive_error_limit=3),
    )
    defaults.update(overrides)
    return Goal(**defaults)


def _summary(percent: float) -> UsageSummary:
    return UsageSummary(providers=[
        ProviderUsage(provider="anthropic", windows=[UsageWindow(label="weekly", used_percent=percent)])
    ])


class TestGoalBudgets:
    def test_fresh_goal_is_allowed(self):
        report = evaluate_goal(_goal())
        assert report.allowed
        assert report.warnings == []
        assert list(report.checks) == ["iterations", "tokens", "time", "provider_usage", "circuit_breaker", "stall"]

    def test_iteration_budget_blocks_at_limit(self):
        goal = _goal()
        goal.usage.iterations = 10

        report = evaluate_goal(goal)

        assert not report.allowed
        assert report.kind == BlockKind.BUDGET
        assert report.reason == "Iteration budget exceeded (10/10)"

    def test_warning_at_eighty_percent(self):
        goal = _goal()
        goal.usage.iterations = 8

        report = evaluate_goal(goal)

        assert report.allowed
        assert report.warnings == ["Iteration budget at 80% (8/10)"]

    def test_token_budget_blocks(self):
        goal = _goal()
        goal.usage.total_tokens = 1500

        report = evaluate_goal(goal)

        assert report.kind == BlockKind.BUDGET
        assert "Token budget exceeded" in report.reason

    def test_time_budget_blocks(self):
        now = datetime.now(UTC)
        goal = _goal()
        goal.usage.started_at = now - timedelta(hours=2)

        report = evaluate_goal(goal, now=now)

        assert report.kind == BlockKind.BUDGET
        assert "Time budget exceeded" in report.reason

    def test_first_block_short_circuits(self):
        goal = _goal()
        goal.usage.iterations = 10
        goal.usage.consecutive_errors = 99

        report = evaluate_goal(goal)

        assert report.kind == BlockKind.BUDGET
        assert "circuit_breaker" not in report.checks


class TestProviderUsage:
    def test_blocks_above_threshold(self):
        report = evaluate_goal(_goal(), usage_summary=_summary(85))

        assert report.kind == BlockKind.PROVIDER_USAGE
        assert report.kind.exhausts_budget
        assert report.reason == "Provider usage at 85% (threshold: 80%)"

    def test_below_threshold_passes(self):
        assert evaluate_goal(_goal(), usage_summary=_summary(50)).allowed

    @pytest.mark.asyncio
    async def test_unavailable_usage_never_blocks(self):
        governor = BudgetGovernor(StaticUsageSource(fail=True))

        report = await governor.check_goal(_goal())

        assert report.allowed


class TestCircuitBreakerAndStall:
    def test_consecutive_errors_trip_breaker(self):
        goal = _goal()
        goal.usage.consecutive_errors = 3

        report = evaluate_goal(goal)

        assert report.kind == BlockKind.CIRCUIT_BREAKER
        assert not report.kind.exhausts_budget
        assert "3 consecutive errors" in report.reason

    def test_flat_scores_are_a_stall(self):
        goal = _goal(evaluation_scores=[10, 40, 42, 44])

        report = evaluate_goal(goal)

        assert report.kind == BlockKind.STALL
        assert "scores: 40, 42, 44" in report.reason

    def test_one_real_step_is_not_a_stall(self):
        ok, _ = check_stall(_goal(evaluation_scores=[40, 50, 52]))
        assert ok

    def test_too_few_scores_never_stall(self):
        ok, _ = check_stall(_goal(evaluation_scores=[40, 40]))
        assert ok


class TestPlanBudgets:
    def test_agent_turns_block(self):
        plan = Plan(id="plan-test", goal="Build it", budget=PlanBudget(max_agent_turns=5))
        plan.usage.agent_turns = 5

        report = evaluate_plan(plan)

        assert report.kind == BlockKind.BUDGET
        assert report.reason == "Agent turn budget exceeded (5/5)"

    def test_plan_has_no_stall_or_breaker_checks(self):
        plan = Plan(id="plan-test", goal="Build it")

        report = evaluate_plan(plan)

        assert report.allowed
        assert "stall" not in report.checks
        assert "circuit_breaker" not in report.checks

    @pytest.mark.asyncio
    async def test_provider_usage_applies_to_plans(self):
        governor = BudgetGovernor(StaticUsageSource(used_percent=95))

        report = await governor.check_plan(Plan(id="plan-test", goal="Build it"))

        assert report.kind == BlockKind.PROVIDER_USAGE


def test_quality_gate_due_for_next_iteration():
    goal = _goal(quality_gates=[QualityGate(at_iteration=3)])
    goal.usage.iterations = 2
    assert is_quality_gate_due(goal)

    goal.approved_gates.append(3)
    assert not is_quality_gate_due(goal)
