"""Worker agent: executes one plan task in its own isolated session."""

import logging
import time
from typing import Optional

from ..core.plan import Plan, PlanTask, PlanTaskStatus, TaskResult, WorkerRunRecord
from ..llm.base import AgentTurnExecutor, TurnRequest, run_turn
from ..store.execution_log import PlanLogs

logger = logging.getLogger(__name__)

SUMMARY_FALLBACK_CHARS = 500


def dependency_summary(task: PlanTask) -> str:
    """What a completed task hands to its dependants."""
    result = task.result
    if result is None:
        return "Task completed"
    if result.summary:
        return result.summary
    if result.output_text:
        return result.output_text[:SUMMARY_FALLBACK_CHARS]
    return "Task completed"


def build_worker_prompt(task: PlanTask, plan: Plan) -> str:
    context = []
    for dep_id in task.depends_on:
        dep = plan.get_task(dep_id)
        if dep is None or not dep.is_(PlanTaskStatus.COMPLETED):
            continue
        context.append(f"### {dep.id}: {dep.title}\n{dependency_summary(dep)}")

    prompt = f"""You are executing a single focused task. Complete it fully.

## Your Task
{task.title}

## Instructions
{task.description or "(no further instructions)"}"""

    if context:
        prompt += "\n\n## Context from Previous Tasks\n" + "\n\n".join(context)

    prompt += """

## Rules
- Complete this specific task only; do not work on other tasks
- If you encounter an error, describe it clearly in your response
- Verify your work (e.g. run the build, check the file exists)
- End your response with a brief summary of what you did"""
    return prompt


class WorkerAgent:
    """Runs one task turn and records it in worker-runs.jsonl."""

    def __init__(self, executor: AgentTurnExecutor, agent_id: Optional[str] = None):
        self.executor = executor
        self.agent_id = agent_id

    async def run(self, task: PlanTask, plan: Plan, logs: PlanLogs) -> TaskResult:
        started = time.monotonic()
        result = await run_turn(self.executor, TurnRequest(
            session_key=plan.worker_session_key(task.id),
            prompt=build_worker_prompt(task, plan),
            agent_id=self.agent_id,
        ))
        duration_ms = int((time.monotonic() - started) * 1000)

        if result.ok:
            summary = result.summary or (
                result.output_text[:SUMMARY_FALLBACK_CHARS] if result.output_text else "Task completed"
            )
            task_result = TaskResult(
                status="ok",
                summary=summary,
                output_text=result.output_text,
                total_tokens=result.total_tokens,
            )
        else:
            task_result = TaskResult(
                status=result.status.value,
                error=result.error or f"Worker turn {result.status.value}",
                output_text=result.output_text,
                total_tokens=result.total_tokens,
            )

        logs.worker_runs.append(WorkerRunRecord(
            plan_id=plan.id,
            task_id=task.id,
            attempt=task.retries + 1,
            status=task_result.status,
            summary=task_result.summary,
            error=task_result.error,
            tokens=task_result.total_tokens,
            duration_ms=duration_ms,
        ))
        return task_result
