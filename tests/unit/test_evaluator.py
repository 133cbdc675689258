"""Tests for progress evaluator decoding and fallbacks."""

import json

import pytest

from autopilot.core.evaluator import (
    FALLBACK_NEXT_ACTION,
    ProgressEvaluator,
    build_evaluation_prompt,
    clamp_score,
    parse_verdict,
)
from autopilot.core.goal import Goal, IterationRecord
from autopilot.store.execution_log import GoalLogs
from tests.fakes import ScriptedExecutor, error, verdict

CRITERIA = ["Tests pass", "Docs updated"]


class TestClampScore:
    @pytest.mark.parametrize("raw, expected", [
        (50, 50),
        (94.5, 95),
        (94.4, 94),
        (-3, 0),
        (180, 100),
        ("90", 0),
        (None, 0),
        (True, 0),
        (float("nan"), 0),
    ])
    def test_clamp(self, raw, expected):
        assert clamp_score(raw) == expected


class TestParseVerdict:
    def test_parses_full_verdict(self):
        text = json.dumps({
            "progressScore": 72,
            "assessment": "Halfway there",
            "criteriaStatus": [{"met": True, "notes": "green"}, {"met": False}],
            "shouldContinue": True,
            "suggestedNextAction": "Write docs",
        })

        result = parse_verdict(text, CRITERIA)

        assert result.source == "parsed"
        assert result.progress_score == 72
        assert [c.criterion for c in result.criteria_status] == CRITERIA
        assert [c.met for c in result.criteria_status] == [True, False]
        assert result.criteria_status[0].notes == "green"
        assert result.suggested_next_action == "Write docs"

    def test_json_surrounded_by_prose(self):
        text = 'Here is my evaluation:\n```json\n{"progressScore": 40, "shouldContinue": true}\n```\nThanks'

        result = parse_verdict(text, CRITERIA)

        assert result.progress_score == 40
        assert result.assessment == "No assessment provided"

    def test_missing_criteria_entries_are_unmet(self):
        result = parse_verdict('{"progressScore": 60, "criteriaStatus": [{"met": true}]}', CRITERIA)

        assert [c.met for c in result.criteria_status] == [True, False]

    def test_non_boolean_should_continue_defaults_to_true(self):
        result = parse_verdict('{"progressScore": 99, "shouldContinue": "no"}', CRITERIA)
        assert result.should_continue is True

    def test_malformed_output_falls_back(self):
        result = parse_verdict("I could not decide", CRITERIA)

        assert result.source == "fallback"
        assert result.progress_score == 0
        assert result.should_continue is True
        assert result.suggested_next_action == FALLBACK_NEXT_ACTION
        assert all(not c.met and c.notes == "Parse error" for c in result.criteria_status)

    def test_broken_json_falls_back(self):
        result = parse_verdict('{"progressScore": 80,', CRITERIA)
        assert result.source == "fallback"


def test_prompt_lists_recent_work():
    goal = Goal(id="goal-1", goal="Make CI green", criteria=CRITERIA)
    recent = [IterationRecord(goal_id="goal-1", iteration=1, status="ok", summary="Fixed lint")]

    prompt = build_evaluation_prompt(goal, recent, [])

    assert "Make CI green" in prompt
    assert "1. Tests pass" in prompt
    assert "Iteration 1 (ok): Fixed lint" in prompt
    assert "(no previous evaluations)" in prompt


class TestProgressEvaluator:
    @pytest.mark.asyncio
    async def test_evaluates_with_isolated_session(self, tmp_path):
        executor = ScriptedExecutor({"goal-eval:": verdict(70, met=[True, False])})
        goal = Goal(id="goal-1", goal="Make CI green", criteria=CRITERIA)
        logs = GoalLogs(tmp_path)

        result = await ProgressEvaluator(executor).evaluate(goal, logs)

        assert result.progress_score == 70
        assert executor.requests[0].session_key == "goal-eval:goal-1"
        assert logs.evaluations.read()[0].result.progress_score == 70

    @pytest.mark.asyncio
    async def test_failed_turn_gives_fallback_and_is_logged(self, tmp_path):
        executor = ScriptedExecutor({"goal-eval:": error("timeout")})
        goal = Goal(id="goal-1", goal="Make CI green", criteria=CRITERIA)
        logs = GoalLogs(tmp_path)

        result = await ProgressEvaluator(executor).evaluate(goal, logs)

        assert result.source == "fallback"
        assert "timeout" in result.assessment
        assert logs.evaluations.read()[0].result.source == "fallback"

    @pytest.mark.asyncio
    async def test_uses_eval_model(self, tmp_path):
        executor = ScriptedExecutor({"goal-eval:": verdict(10)})
        goal = Goal(id="goal-1", goal="Make CI green")
        goal.eval_config.eval_model = "small-model"

        await ProgressEvaluator(executor).evaluate(goal, GoalLogs(tmp_path))

        assert executor.requests[0].model == "small-model"
