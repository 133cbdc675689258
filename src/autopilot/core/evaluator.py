"""Progress evaluator: an independent turn that scores a goal's progress.

The verdict is decoded from one JSON schema. Anything that does not decode
yields a deterministic fallback verdict that keeps the goal running; a
parse failure is never read as success or as a reason to stop.
"""

import logging
import math
import time
from typing import Any, List, Optional

from ..llm.base import AgentTurnExecutor, TurnRequest, run_turn
from ..store.execution_log import GoalLogs
from ..utils.json_extract import extract_json_object
from .goal import CriterionStatus, EvaluationRecord, EvaluationVerdict, Goal, IterationRecord

logger = logging.getLogger(__name__)

RECENT_ITERATIONS = 10
PREVIOUS_EVALUATIONS = 3
FALLBACK_NEXT_ACTION = "Continue working on the goal."

EVALUATOR_SCHEMA = """{
  "progressScore": <number 0-100>,
  "assessment": "<brief assessment of current progress>",
  "criteriaStatus": [
    { "criterion": "<criterion text>", "met": <boolean>, "notes": "<optional notes>" }
  ],
  "shouldContinue": <boolean>,
  "suggestedNextAction": "<what the agent should focus on next>"
}"""


def clamp_score(value: Any) -> int:
    """Round half up and clamp to 0..100; non-numbers score 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        return 0
    return max(0, min(100, math.floor(value + 0.5)))


def decode_criteria_status(raw: Any, criteria: List[str]) -> List[CriterionStatus]:
    """One entry per criterion, matched by position. Missing entries are unmet."""
    entries = raw if isinstance(raw, list) else []
    statuses = []
    for i, criterion in enumerate(criteria):
        entry = entries[i] if i < len(entries) and isinstance(entries[i], dict) else {}
        notes = entry.get("notes")
        statuses.append(CriterionStatus(
            criterion=criterion,
            met=entry.get("met") is True,
            notes=notes if isinstance(notes, str) else None,
        ))
    return statuses


def fallback_verdict(criteria: List[str], reason: str) -> EvaluationVerdict:
    return EvaluationVerdict(
        progress_score=0,
        assessment=reason,
        criteria_status=[CriterionStatus(criterion=c, met=False, notes="Parse error") for c in criteria],
        should_continue=True,
        suggested_next_action=FALLBACK_NEXT_ACTION,
        source="fallback",
    )


def parse_verdict(text: str, criteria: List[str]) -> EvaluationVerdict:
    data, error = extract_json_object(text)
    if data is None:
        return fallback_verdict(criteria, error)

    assessment = data.get("assessment")
    should_continue = data.get("shouldContinue")
    next_action = data.get("suggestedNextAction")
    return EvaluationVerdict(
        progress_score=clamp_score(data.get("progressScore")),
        assessment=assessment if isinstance(assessment, str) else "No assessment provided",
        criteria_status=decode_criteria_status(data.get("criteriaStatus"), criteria),
        should_continue=should_continue if isinstance(should_continue, bool) else True,
        suggested_next_action=next_action if isinstance(next_action, str) else None,
    )


def _numbered(items: List[str]) -> str:
    return "\n".join(f"  {i + 1}. {item}" for i, item in enumerate(items)) or "  (none)"


def build_evaluation_prompt(
    goal: Goal,
    recent_iterations: List[IterationRecord],
    previous_evaluations: List[EvaluationVerdict],
) -> str:
    iteration_lines = "\n".join(
        f"  - Iteration {r.iteration} ({r.status}): {r.summary or r.error or '(no summary)'}"
        for r in recent_iterations[-RECENT_ITERATIONS:]
    ) or "  (no iterations yet)"

    if previous_evaluations:
        evaluation_lines = "\n".join(
            f"  - Score: {e.progress_score}/100: {e.assessment}"
            + ("" if e.should_continue else " [recommended stop]")
            for e in previous_evaluations[-PREVIOUS_EVALUATIONS:]
        )
    else:
        evaluation_lines = "  (no previous evaluations)"

    return f"""You are a progress evaluator for an autonomous agent working toward a goal.

## Goal
{goal.goal}

## Acceptance Criteria
{_numbered(goal.criteria)}

## Recent Iteration Summaries
{iteration_lines}

## Previous Evaluations
{evaluation_lines}

## Current Stats
- Iterations completed: {goal.usage.iterations}
- Total tokens used: {goal.usage.total_tokens}
- Consecutive errors: {goal.usage.consecutive_errors}

## Instructions
Evaluate the agent's progress toward the goal. Return ONLY a JSON object (no markdown fences, no extra text) with this exact schema:

{EVALUATOR_SCHEMA}

Rules:
- progressScore 95+ means the goal is effectively complete.
- Set shouldContinue to false if the goal is complete, fundamentally blocked, or the agent is going in circles.
- criteriaStatus must have one entry per acceptance criterion, in order.
- suggestedNextAction should be specific and actionable."""


class ProgressEvaluator:
    """Scores a goal through one isolated evaluator turn."""

    def __init__(self, executor: AgentTurnExecutor, agent_id: Optional[str] = None):
        self.executor = executor
        self.agent_id = agent_id

    async def evaluate(self, goal: Goal, logs: GoalLogs) -> EvaluationVerdict:
        """Run the evaluator turn and append the verdict to the evaluation log.

        The log entry is written whatever the outcome, including fallbacks.
        """
        recent = logs.iterations.read(limit=RECENT_ITERATIONS)
        previous = [r.result for r in logs.evaluations.read(limit=PREVIOUS_EVALUATIONS)]
        prompt = build_evaluation_prompt(goal, recent, previous)

        started = time.monotonic()
        result = await run_turn(self.executor, TurnRequest(
            session_key=goal.eval_session_key(),
            prompt=prompt,
            agent_id=self.agent_id or goal.agent_id,
            model=goal.eval_config.eval_model,
        ))
        duration_ms = int((time.monotonic() - started) * 1000)

        if result.ok:
            verdict = parse_verdict(result.output_text or result.summary or "", goal.criteria)
        else:
            verdict = fallback_verdict(goal.criteria, f"Evaluator turn failed: {result.error or 'unknown error'}")

        if verdict.source == "fallback":
            logger.warning(f"Goal {goal.id}: evaluator fallback verdict ({verdict.assessment})")

        logs.evaluations.append(EvaluationRecord(
            goal_id=goal.id,
            iteration=goal.usage.iterations,
            result=verdict,
            duration_ms=duration_ms,
        ))
        return verdict
