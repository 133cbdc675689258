"""Plan engine: planning, batched DAG execution, replanning and final evaluation.

One engine instance can drive many plans; each ``run`` call owns exactly one
plan id. All plan state changes go through the plan store's read-modify-write
so that workers never touch shared state: results are folded in by this loop
only after every worker of a batch has returned.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Dict, List, Optional, Tuple

from ..core.config import PlanDefaults
from ..core.events import EventBus, EventType, event_payload
from ..core.governor import BudgetGovernor, GovernanceReport
from ..core.notifications import Notifier
from ..core.plan import Plan, PlanStatus, PlanTaskStatus, TaskResult, TaskTransitionRecord
from ..errors import DagValidationError, DecompositionError
from ..llm.base import AgentTurnExecutor
from ..store.execution_log import PlanLogs
from ..store.state_store import PlanStore
from ..utils.error_handling import ErrorContext
from ..utils.rich_logging import ContextLogger, get_execution_logger
from .dag import analyze, ensure_valid_dag, merge_replanned, ready_tasks, skip_downstream, update_ready_tasks
from .plan_evaluator import PlanEvaluator
from .planner import PlannerAgent, PlannerResult
from .worker import WorkerAgent

logger = logging.getLogger(__name__)

# (task_id, from_status, to_status, reason)
Transition = Tuple[str, str, str, Optional[str]]


def _set_task_status(task, status: PlanTaskStatus, reason: Optional[str] = None) -> Transition:
    previous = task.status
    task.status = status.value
    return (task.id, previous, status.value, reason)


class PlanEngine:
    """Drives plans from decomposition to a final evaluated result."""

    def __init__(
        self,
        store: PlanStore,
        executor: AgentTurnExecutor,
        settings: Optional[PlanDefaults] = None,
        governor: Optional[BudgetGovernor] = None,
        planner: Optional[PlannerAgent] = None,
        worker: Optional[WorkerAgent] = None,
        evaluator: Optional[PlanEvaluator] = None,
        notifier: Optional[Notifier] = None,
        events: Optional[EventBus] = None,
    ):
        self.store = store
        self.settings = settings or PlanDefaults()
        self.governor = governor or BudgetGovernor()
        self.planner = planner or PlannerAgent(executor, self.settings.planner_agent_id)
        self.worker = worker or WorkerAgent(executor, self.settings.worker_agent_id)
        self.evaluator = evaluator or PlanEvaluator(executor, self.settings.evaluator_agent_id)
        self.notifier = notifier or Notifier()
        self.events = events or EventBus()

    def logs_for(self, plan_id: str) -> PlanLogs:
        return PlanLogs(self.store.log_dir(plan_id))

    async def run(self, plan_id: str, cancel_event: Optional[asyncio.Event] = None) -> Optional[Plan]:
        """Drive ``plan_id`` until it halts or ``cancel_event`` is set.

        Decomposition failures and unexpected errors mark the plan failed;
        nothing is raised to the caller.
        """
        cancel = cancel_event or asyncio.Event()
        log = get_execution_logger(__name__, plan_id)
        logs = self.logs_for(plan_id)

        try:
            await self._run(plan_id, cancel, logs, log)
        except Exception as e:
            if cancel.is_set():
                log.warning(f"Plan loop raised after cancellation: {e}")
            else:
                await self._fail(plan_id, str(e), log)
        return self.store.get(plan_id)

    async def _run(self, plan_id: str, cancel: asyncio.Event, logs: PlanLogs, log: ContextLogger) -> None:
        plan = self.store.require(plan_id)
        if plan.is_terminal:
            log.info("Plan already completed, nothing to do")
            return

        if not plan.tasks:
            if not await self._plan_phase(plan_id, cancel, logs, log):
                return
        elif plan.status != PlanStatus.EVALUATING:
            plan = self._resume_executing(plan_id, logs)
            await self.notifier.send(plan.notify, f"Plan resumed: {plan.goal} [{plan.id}]")
            self.events.fire(EventType.PLAN_STARTED, **event_payload(plan))

        if plan.status == PlanStatus.EVALUATING or await self._execute(plan_id, cancel, logs, log):
            await self._finalize(plan_id, cancel, logs, log)

    def _resume_executing(self, plan_id: str, logs: PlanLogs) -> Plan:
        transitions: List[Transition] = []

        def _resume(p: Plan) -> None:
            # Turns interrupted mid-flight are redone from the last commit
            for task in p.tasks_with_status(PlanTaskStatus.RUNNING):
                transitions.append(_set_task_status(task, PlanTaskStatus.PENDING, "interrupted"))
            p.transition_to(PlanStatus.EXECUTING)
            if p.usage.started_at is None:
                p.usage.started_at = datetime.now(UTC)

        plan = self.store.update(plan_id, _resume)
        self._log_transitions(plan, transitions, logs)
        return plan

    # -- planning -------------------------------------------------------

    async def _plan_phase(self, plan_id: str, cancel: asyncio.Event, logs: PlanLogs, log: ContextLogger) -> bool:
        """Decompose the objective. Returns True once the plan is executing."""
        def _begin(p: Plan) -> None:
            p.transition_to(PlanStatus.PLANNING)
            if p.usage.started_at is None:
                p.usage.started_at = datetime.now(UTC)

        plan = self.store.update(plan_id, _begin)
        log.phase_change(PlanStatus.PLANNING.value)
        await self.notifier.send(plan.notify, f"Plan started: {plan.goal} [{plan.id}]")
        self.events.fire(EventType.PLAN_STARTED, **event_payload(plan))

        result = await self._decompose(plan_id, PlanStatus.PLANNING, cancel, logs, log)
        if result is None:
            return False
        tasks = result.tasks

        transitions: List[Transition] = []

        def _apply(p: Plan) -> None:
            if p.status != PlanStatus.PLANNING:
                return
            p.tasks = tasks
            transitions.extend(
                (task_id, old, new, None) for task_id, (old, new) in update_ready_tasks(p.tasks).items()
            )
            p.transition_to(PlanStatus.EXECUTING)

        plan = self.store.update(plan_id, _apply)
        if plan.status != PlanStatus.EXECUTING:
            return False
        self._log_transitions(plan, transitions, logs)

        log.phase_change(PlanStatus.EXECUTING.value)
        log.info(f"{len(tasks)} tasks created, starting execution")
        await self.notifier.send(
            plan.notify, f"Plan decomposed into {len(tasks)} tasks [{plan.id}]. Starting execution."
        )
        return True

    async def _decompose(
        self,
        plan_id: str,
        phase: PlanStatus,
        cancel: asyncio.Event,
        logs: PlanLogs,
        log: ContextLogger,
    ) -> Optional[PlannerResult]:
        """Run planner turns until one yields a valid graph.

        Returns None when the plan was halted or cancelled meanwhile and
        raises :class:`DecompositionError` once the attempts are used up.
        """
        replan = phase == PlanStatus.REPLANNING
        attempts = self.settings.max_decomposition_attempts
        problems: List[str] = []

        for attempt in range(1, attempts + 1):
            plan = self.store.require(plan_id)
            report = await self.governor.check_plan(plan)
            if not report.allowed:
                await self._halt(plan, report, log)
                return None

            result = await self.planner.decompose(plan, logs, replan=replan)
            plan = self.store.update(plan_id, lambda p: self._count_turn(p, result.total_tokens, result.ok))
            if cancel.is_set() or plan.status != phase:
                return None

            for warning in result.warnings:
                log.warning(warning)

            if result.ok:
                candidate = merge_replanned(plan.tasks, result.tasks) if replan else result.tasks
                try:
                    ensure_valid_dag(candidate)
                    return result
                except DagValidationError as e:
                    problems = e.problems
            else:
                problems = [result.error or "planner returned no tasks"]
            log.warning(f"{phase.value.capitalize()} attempt {attempt}/{attempts} rejected: {'; '.join(problems)}")

        verb = "Replanning" if replan else "Planner"
        raise DecompositionError(
            f"{verb} failed to produce a valid task DAG after {attempts} attempts: {'; '.join(problems)}",
            attempts=attempts,
        )

    @staticmethod
    def _count_turn(plan: Plan, tokens: int, ok: bool = True) -> None:
        plan.usage.agent_turns += 1
        plan.usage.total_tokens += tokens
        if not ok:
            plan.usage.errors += 1

    # -- execution ------------------------------------------------------

    def _can_afford_replan(self, plan: Plan) -> bool:
        # One turn for the replan plus one for the final evaluation
        return plan.usage.agent_turns + 2 <= plan.budget.max_agent_turns

    async def _execute(self, plan_id: str, cancel: asyncio.Event, logs: PlanLogs, log: ContextLogger) -> bool:
        """Dispatch batches until no work remains. Returns True to go on to evaluation."""
        while not cancel.is_set():
            plan = self.store.require(plan_id)
            if plan.status != PlanStatus.EXECUTING:
                log.info(f"Plan is no longer executing (status: {plan.status}), exiting loop")
                return False

            report = await self.governor.check_plan(plan)
            if not report.allowed:
                await self._halt(plan, report, log)
                return False
            for warning in report.warnings:
                log.warning(warning)
                await self.notifier.send(plan.notify, f"Plan warning [{plan.id}]: {warning}")

            transitions: List[Transition] = []

            def _promote(p: Plan) -> None:
                transitions.extend(
                    (task_id, old, new, None) for task_id, (old, new) in update_ready_tasks(p.tasks).items()
                )

            plan = self.store.update(plan_id, _promote)
            self._log_transitions(plan, transitions, logs)

            state = analyze(plan.tasks)
            if state.all_done:
                log.info("All tasks done, moving to evaluation")
                return True

            if not state.has_ready:
                if state.deadlocked and self._can_afford_replan(plan):
                    log.warning("Deadlock detected, replanning")
                    if not await self._replan(plan_id, cancel, logs, log):
                        return False
                    continue
                log.warning("No runnable tasks left, moving to evaluation")
                return True

            batch_failed_rate = await self._run_batch(plan, cancel, logs, log)
            if batch_failed_rate is None:
                return False

            plan = self.store.require(plan_id)
            if batch_failed_rate > plan.budget.replan_threshold and plan.status == PlanStatus.EXECUTING:
                if self._can_afford_replan(plan):
                    log.info(
                        f"Batch failure rate {batch_failed_rate:.0%} exceeds threshold "
                        f"{plan.budget.replan_threshold:.0%}, replanning"
                    )
                    if not await self._replan(plan_id, cancel, logs, log):
                        return False
                    plan = self.store.require(plan_id)
                else:
                    log.warning("Batch failure rate exceeds threshold but no turns are left to replan")

            await self.notifier.send(plan.notify, f"Plan progress [{plan.id}]: {analyze(plan.tasks).progress_line()}")
            await self._sleep(cancel, self.settings.batch_delay_seconds)

        log.info("Plan loop cancelled")
        return False

    async def _run_batch(
        self,
        plan: Plan,
        cancel: asyncio.Event,
        logs: PlanLogs,
        log: ContextLogger,
    ) -> Optional[float]:
        """Run one batch of ready tasks. Returns its failure rate, or None if results were discarded."""
        batch_ids = [t.id for t in ready_tasks(plan.tasks)[: plan.budget.max_concurrency]]
        transitions: List[Transition] = []

        def _dispatch(p: Plan) -> None:
            now = datetime.now(UTC)
            for task_id in batch_ids:
                task = p.get_task(task_id)
                transitions.append(_set_task_status(task, PlanTaskStatus.RUNNING))
                task.started_at = now

        plan = self.store.update(plan.id, _dispatch)
        self._log_transitions(plan, transitions, logs)
        log.info(f"Dispatching {len(batch_ids)} workers ({', '.join(batch_ids)})")

        batch = [plan.get_task(task_id) for task_id in batch_ids]
        results: List[TaskResult] = await asyncio.gather(
            *(self.worker.run(task, plan, logs) for task in batch)
        )

        if cancel.is_set():
            log.info("Discarding batch results: loop cancelled")
            return None

        return await self._apply_results(plan.id, batch_ids, results, logs, log)

    async def _apply_results(
        self,
        plan_id: str,
        batch_ids: List[str],
        results: List[TaskResult],
        logs: PlanLogs,
        log: ContextLogger,
    ) -> Optional[float]:
        transitions: List[Transition] = []
        outcome: Dict[str, List[str]] = {"completed": [], "failed": [], "errored": []}
        applied = []

        def _apply(p: Plan) -> None:
            if p.status != PlanStatus.EXECUTING:
                return
            applied.append(True)
            now = datetime.now(UTC)
            for task_id, result in zip(batch_ids, results):
                task = p.get_task(task_id)
                if task is None:
                    continue
                self._count_turn(p, result.total_tokens, result.status == "ok")
                task.result = result
                if result.status == "ok":
                    task.completed_at = now
                    transitions.append(_set_task_status(task, PlanTaskStatus.COMPLETED))
                    outcome["completed"].append(task_id)
                    continue

                task.retries += 1
                outcome["errored"].append(task_id)
                if task.retries >= p.budget.max_retries:
                    task.completed_at = now
                    transitions.append(_set_task_status(
                        task, PlanTaskStatus.FAILED, f"max retries reached: {result.error}"
                    ))
                    outcome["failed"].append(task_id)
                    before = {t.id: t.status for t in p.tasks}
                    for skipped_id in skip_downstream(p.tasks, task_id):
                        transitions.append((
                            skipped_id, before[skipped_id], PlanTaskStatus.SKIPPED.value,
                            f"dependency {task_id} failed",
                        ))
                else:
                    transitions.append(_set_task_status(
                        task, PlanTaskStatus.PENDING,
                        f"retry {task.retries}/{p.budget.max_retries}: {result.error}",
                    ))

        plan = self.store.update(plan_id, _apply)
        if not applied:
            log.info(f"Discarding batch results: plan is {plan.status}")
            return None
        self._log_transitions(plan, transitions, logs)

        for task_id in outcome["completed"]:
            log.info(f"Task {task_id} completed")
            self.events.fire(EventType.PLAN_TASK_COMPLETED, **event_payload(plan, task_id=task_id))
        for task_id in outcome["errored"]:
            task = plan.get_task(task_id)
            error = task.result.error if task.result else None
            if task_id in outcome["failed"]:
                log.warning(f"Task {task_id} failed (max retries reached): {error}")
                self.events.fire(EventType.PLAN_TASK_FAILED, **event_payload(plan, task_id=task_id, error=error))
            else:
                log.info(f"Task {task_id} failed, will retry ({task.retries}/{plan.budget.max_retries}): {error}")

        return len(outcome["errored"]) / len(batch_ids)

    async def _replan(self, plan_id: str, cancel: asyncio.Event, logs: PlanLogs, log: ContextLogger) -> bool:
        """Replace the non-completed tasks. Returns True once the plan is executing again."""
        plan = self.store.update(plan_id, lambda p: p.transition_to(PlanStatus.REPLANNING))
        log.phase_change(PlanStatus.REPLANNING.value)
        log.info(f"Triggering replan (revision {plan.plan_revision + 1})")
        await self.notifier.send(plan.notify, f"Re-planning triggered for [{plan.id}]: adjusting task strategy.")

        result = await self._decompose(plan_id, PlanStatus.REPLANNING, cancel, logs, log)
        if result is None:
            return False

        transitions: List[Transition] = []

        def _apply(p: Plan) -> None:
            if p.status != PlanStatus.REPLANNING:
                return
            kept = {t.id for t in p.tasks if t.is_(PlanTaskStatus.COMPLETED)}
            for task in p.tasks:
                if task.id not in kept:
                    transitions.append((task.id, task.status, "removed", f"replaced in revision {p.plan_revision + 1}"))
            p.tasks = merge_replanned(p.tasks, result.tasks)
            p.plan_revision += 1
            transitions.extend(
                (task_id, old, new, None) for task_id, (old, new) in update_ready_tasks(p.tasks).items()
            )
            p.transition_to(PlanStatus.EXECUTING)

        plan = self.store.update(plan_id, _apply)
        if plan.status != PlanStatus.EXECUTING:
            return False
        self._log_transitions(plan, transitions, logs)

        log.phase_change(PlanStatus.EXECUTING.value)
        log.info(f"Replanned to {len(plan.tasks)} tasks (revision {plan.plan_revision})")
        return True

    # -- completion -----------------------------------------------------

    async def _finalize(self, plan_id: str, cancel: asyncio.Event, logs: PlanLogs, log: ContextLogger) -> None:
        plan = self.store.update(plan_id, lambda p: p.transition_to(PlanStatus.EVALUATING))
        log.phase_change(PlanStatus.EVALUATING.value)
        log.info("Running final evaluation")

        evaluation, tokens = await self.evaluator.evaluate(plan, logs)
        if cancel.is_set():
            log.info("Discarding final evaluation: loop cancelled")
            return

        score = evaluation.score

        def _complete(p: Plan) -> None:
            self._count_turn(p, tokens)
            if p.status != PlanStatus.EVALUATING:
                return
            p.final_evaluation = evaluation
            if score >= 95:
                reason = f"Plan completed with score {score}/100"
            else:
                reason = f"Plan finished with score {score}/100: {evaluation.assessment}"
            p.transition_to(PlanStatus.COMPLETED, reason)

        plan = self.store.update(plan_id, _complete)
        if plan.status != PlanStatus.COMPLETED:
            return

        log.phase_change(PlanStatus.COMPLETED.value)
        log.info(f"Plan finished: score {score}/100")
        await self.notifier.send(
            plan.notify, f"Plan COMPLETED: {plan.goal} [{plan.id}] - Score: {score}/100. {evaluation.assessment}"
        )
        self.events.fire(EventType.PLAN_COMPLETED, **event_payload(plan, score=score))

    async def _halt(self, plan: Plan, report: GovernanceReport, log: ContextLogger) -> None:
        status = PlanStatus.FAILED if report.kind.exhausts_budget else PlanStatus.STOPPED

        def _stop(p: Plan) -> None:
            if p.is_active:
                p.transition_to(status, report.reason)

        plan = self.store.update(plan.id, _stop)
        if plan.status != status:
            return

        log.phase_change(status.value)
        log.info(f"Plan stopped: {report.reason}")
        await self.notifier.send(plan.notify, f"Plan stopped: {plan.goal} [{plan.id}] - {report.reason}")
        self.events.fire(EventType.PLAN_FAILED, **event_payload(plan, error=report.reason))

    async def _fail(self, plan_id: str, reason: str, log: ContextLogger) -> None:
        log.error(f"Plan loop failed: {reason}")

        def _mark_failed(p: Plan) -> None:
            if p.can_transition_to(PlanStatus.FAILED):
                p.transition_to(PlanStatus.FAILED, reason)

        with ErrorContext(f"marking plan {plan_id} failed", raise_on_error=False, log_to=logger) as ctx:
            plan = self.store.update(plan_id, _mark_failed)
        if ctx.error is not None or plan.status != PlanStatus.FAILED:
            return

        await self.notifier.send(plan.notify, f"Plan FAILED: {plan.goal} [{plan.id}] - {plan.stop_reason}")
        self.events.fire(EventType.PLAN_FAILED, **event_payload(plan, error=plan.stop_reason))

    def _log_transitions(self, plan: Plan, transitions: List[Transition], logs: PlanLogs) -> None:
        for task_id, from_status, to_status, reason in transitions:
            logs.tasks.append(TaskTransitionRecord(
                plan_id=plan.id,
                task_id=task_id,
                from_status=from_status,
                to_status=to_status,
                reason=reason,
                revision=plan.plan_revision,
            ))

    @staticmethod
    async def _sleep(cancel: asyncio.Event, seconds: float) -> None:
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
