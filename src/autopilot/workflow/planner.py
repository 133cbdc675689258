"""Planner agent: decomposes a plan's objective into a task DAG.

The same agent replans after heavy failure. Both calls share one response
format, ``{"tasks": [{id, title, description, dependencies, group}]}``, and
both are logged to the plan's evaluation log with their phase.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

from ..core.plan import Plan, PlanEvaluationRecord, PlanTask, PlanTaskStatus
from ..llm.base import AgentTurnExecutor, TurnRequest, run_turn
from ..store.execution_log import PlanLogs
from ..utils.json_extract import extract_json_object

logger = logging.getLogger(__name__)

MIN_TASKS = 5
MAX_TASKS = 20

TASKS_SCHEMA = """{
  "tasks": [
    {
      "id": "t1",
      "title": "Initialize project",
      "description": "Exact commands, file paths and contents needed to do this",
      "dependencies": [],
      "group": "setup"
    },
    {
      "id": "t2",
      "title": "Create data layer",
      "description": "Create src/lib/data.py with ...",
      "dependencies": ["t1"],
      "group": "backend"
    }
  ]
}"""


def _numbered(items: List[str]) -> str:
    return "\n".join(f"  {i + 1}. {c}" for i, c in enumerate(items)) or "  (none)"


def build_planner_prompt(goal: str, criteria: List[str]) -> str:
    return f"""You are a project planner. Decompose this goal into a DAG of focused,
independently executable tasks.

## Goal
{goal}

## Acceptance Criteria
{_numbered(criteria)}

## Rules
- Each task should be completable in a SINGLE agent turn (one focused action)
- Tasks should be as independent as possible
- Use dependencies only when order truly matters
- Group related tasks (e.g. "setup", "backend", "frontend", "deploy")
- Task descriptions must be specific enough for an agent to execute without
  additional context: include exact file paths, commands and code snippets
- {MIN_TASKS}-{MAX_TASKS} tasks is typical. Don't over-decompose.

Return ONLY valid JSON (no markdown fences, no extra text):
{TASKS_SCHEMA}"""


def build_replanner_prompt(plan: Plan) -> str:
    completed = "\n".join(
        f"  - [{t.id}] {t.title}: {(t.result and t.result.summary) or 'completed'}"
        for t in plan.tasks_with_status(PlanTaskStatus.COMPLETED)
    )
    failed = "\n".join(
        f"  - [{t.id}] {t.title}: {(t.result and t.result.error) or 'failed'}"
        for t in plan.tasks_with_status(PlanTaskStatus.FAILED)
    )
    remaining = "\n".join(
        f"  - [{t.id}] {t.title} ({t.status}, deps: {', '.join(t.depends_on) or 'none'})"
        for t in plan.tasks
        if PlanTaskStatus(t.status) in (PlanTaskStatus.PENDING, PlanTaskStatus.READY, PlanTaskStatus.SKIPPED)
    )

    return f"""You are replanning a project. Some tasks failed and need alternative approaches.

## Original Goal
{plan.goal}

## Acceptance Criteria
{_numbered(plan.criteria)}

## Completed Tasks
{completed or "  (none)"}

## Failed Tasks
{failed or "  (none)"}

## Remaining Tasks
{remaining or "  (none)"}

Return an updated task list as JSON (same format as the planner).
You may add new tasks, change task descriptions, or drop blocked tasks.
Only include tasks that still need to be done. Do NOT include completed tasks.
Dependencies may reference completed task IDs (they are satisfied).

Return ONLY valid JSON (no markdown fences, no extra text):
{TASKS_SCHEMA}"""


def _task_from_entry(entry: Any) -> Optional[PlanTask]:
    if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
        return None
    task_id = entry["id"]
    title = entry.get("title")
    description = entry.get("description")
    deps = entry.get("dependencies")
    group = entry.get("group")
    return PlanTask(
        id=task_id,
        title=title if isinstance(title, str) else f"Task {task_id}",
        description=description if isinstance(description, str) else "",
        depends_on=[d for d in deps if isinstance(d, str)] if isinstance(deps, list) else [],
        group=group if isinstance(group, str) else None,
    )


def parse_planner_response(text: str) -> Optional[List[PlanTask]]:
    """Decode the task list, or None when nothing usable came back.

    Entries without a string id are dropped; other fields fall back to
    defaults rather than rejecting the whole response.
    """
    data, error = extract_json_object(text)
    if data is None:
        logger.debug(f"Planner response not decodable: {error}")
        return None

    raw_tasks = data.get("tasks")
    if not isinstance(raw_tasks, list):
        return None

    tasks = [t for t in (_task_from_entry(e) for e in raw_tasks) if t is not None]
    return tasks or None


@dataclass
class PlannerResult:
    """Decoded tasks (None on failure) plus what the turn cost."""
    tasks: Optional[List[PlanTask]] = None
    total_tokens: int = 0
    error: Optional[str] = None
    raw_text: str = ""
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.tasks is not None


class PlannerAgent:
    """Runs planning and replanning turns for plans."""

    def __init__(self, executor: AgentTurnExecutor, agent_id: Optional[str] = "planner"):
        self.executor = executor
        self.agent_id = agent_id

    async def decompose(self, plan: Plan, logs: PlanLogs, replan: bool = False) -> PlannerResult:
        prompt = build_replanner_prompt(plan) if replan else build_planner_prompt(plan.goal, plan.criteria)
        phase = "replanning" if replan else "planning"

        started = time.monotonic()
        result = await run_turn(self.executor, TurnRequest(
            session_key=plan.planner_session_key(),
            prompt=prompt,
            agent_id=self.agent_id,
        ))
        duration_ms = int((time.monotonic() - started) * 1000)

        if result.ok:
            text = result.output_text or result.summary or ""
            tasks = parse_planner_response(text)
            error = None if tasks else f"Unparseable planner response: {text[:200]}"
        else:
            text = result.error or ""
            tasks = None
            error = f"Planner turn failed: {result.error or 'unknown error'}"

        planner_result = PlannerResult(
            tasks=tasks,
            total_tokens=result.total_tokens,
            error=error,
            raw_text=text,
        )
        if tasks is not None and not replan and not MIN_TASKS <= len(tasks) <= MAX_TASKS:
            planner_result.warnings.append(
                f"Planner returned {len(tasks)} tasks (expected {MIN_TASKS}-{MAX_TASKS})"
            )

        logs.evaluations.append(PlanEvaluationRecord(
            plan_id=plan.id,
            phase=phase,
            revision=plan.plan_revision,
            task_count=len(tasks) if tasks else 0,
            error=error,
            duration_ms=duration_ms,
        ))
        if error:
            logger.error(f"Plan {plan.id}: {error}")
        return planner_result
