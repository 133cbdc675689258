"""Final evaluation of a plan's aggregate task results."""

import logging
import time
from typing import List, Optional

from ..core.evaluator import clamp_score, decode_criteria_status
from ..core.goal import CriterionStatus
from ..core.plan import Plan, PlanEvaluation, PlanEvaluationRecord, PlanTaskStatus
from ..llm.base import AgentTurnExecutor, TurnRequest, run_turn
from ..store.execution_log import PlanLogs
from ..utils.json_extract import extract_json_object

logger = logging.getLogger(__name__)

FALLBACK_SUGGESTION = "Re-evaluate manually."

_STATUS_LABELS = {
    PlanTaskStatus.COMPLETED.value: "done",
    PlanTaskStatus.FAILED.value: "FAILED",
}


def fallback_evaluation(criteria: List[str], reason: str) -> PlanEvaluation:
    return PlanEvaluation(
        score=0,
        assessment=reason,
        criteria_status=[CriterionStatus(criterion=c, met=False, notes="Parse error") for c in criteria],
        suggestions=FALLBACK_SUGGESTION,
        source="fallback",
    )


def parse_plan_evaluation(text: str, criteria: List[str]) -> PlanEvaluation:
    data, error = extract_json_object(text)
    if data is None:
        return fallback_evaluation(criteria, error)

    assessment = data.get("assessment")
    suggestions = data.get("suggestions")
    return PlanEvaluation(
        score=clamp_score(data.get("score")),
        assessment=assessment if isinstance(assessment, str) else "No assessment provided",
        criteria_status=decode_criteria_status(data.get("criteriaStatus"), criteria),
        suggestions=suggestions if isinstance(suggestions, str) else None,
    )


def build_plan_evaluation_prompt(plan: Plan) -> str:
    criteria = "\n".join(f"  {i + 1}. {c}" for i, c in enumerate(plan.criteria)) or "  (none)"
    results = "\n".join(
        f"  - [{t.id}] {t.title} ({_STATUS_LABELS.get(t.status, t.status)}): "
        f"{(t.result and (t.result.summary or t.result.error)) or '(no result)'}"
        for t in plan.tasks
    ) or "  (no tasks)"

    def count(status: PlanTaskStatus) -> int:
        return len(plan.tasks_with_status(status))

    return f"""You are evaluating the final result of a planned project execution.

## Goal
{plan.goal}

## Acceptance Criteria
{criteria}

## Task Results
{results}

## Stats
- Total tasks: {len(plan.tasks)}
- Completed: {count(PlanTaskStatus.COMPLETED)}
- Failed: {count(PlanTaskStatus.FAILED)}
- Skipped: {count(PlanTaskStatus.SKIPPED)}
- Agent turns used: {plan.usage.agent_turns}
- Plan revision: {plan.plan_revision}

## Instructions
Evaluate the overall result. Return ONLY a JSON object (no markdown fences, no extra text):

{{
  "score": <number 0-100>,
  "assessment": "<brief assessment of overall result>",
  "criteriaStatus": [
    {{ "criterion": "<criterion text>", "met": <boolean>, "notes": "<optional notes>" }}
  ],
  "suggestions": "<what could be done to improve, or empty string if complete>"
}}

Rules:
- score 95+ means the goal is effectively complete.
- criteriaStatus must have one entry per acceptance criterion, in order.
- Be objective and verify based on task results."""


class PlanEvaluator:
    """Scores a finished plan through one isolated turn."""

    def __init__(self, executor: AgentTurnExecutor, agent_id: Optional[str] = "qa"):
        self.executor = executor
        self.agent_id = agent_id

    async def evaluate(self, plan: Plan, logs: PlanLogs) -> tuple[PlanEvaluation, int]:
        """Return the evaluation and the tokens the turn used."""
        started = time.monotonic()
        result = await run_turn(self.executor, TurnRequest(
            session_key=plan.eval_session_key(),
            prompt=build_plan_evaluation_prompt(plan),
            agent_id=self.agent_id,
        ))
        duration_ms = int((time.monotonic() - started) * 1000)

        if result.ok:
            evaluation = parse_plan_evaluation(result.output_text or result.summary or "", plan.criteria)
        else:
            evaluation = fallback_evaluation(
                plan.criteria, f"Evaluator turn failed: {result.error or 'unknown error'}"
            )
        if evaluation.source == "fallback":
            logger.warning(f"Plan {plan.id}: evaluator fallback ({evaluation.assessment})")

        logs.evaluations.append(PlanEvaluationRecord(
            plan_id=plan.id,
            phase="final",
            revision=plan.plan_revision,
            task_count=len(plan.tasks),
            result=evaluation,
            duration_ms=duration_ms,
        ))
        return evaluation, result.total_tokens
