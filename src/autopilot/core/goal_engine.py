"""Goal loop engine: drives one goal through iterate / evaluate / gate cycles.

Each cycle re-reads the persisted goal, asks the governor for permission,
honours quality gates, runs one isolated turn, records it and, every
``eval_every`` iterations, folds an evaluator verdict back into the goal.
Every state change is a read-modify-write through the goal store, so the
loop can be killed between any two steps and resumed from the last commit.
"""

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Optional

from ..llm.base import AgentTurnExecutor, TurnRequest, TurnResult, run_turn
from ..memory.learning_store import LearningStore, NullLearningStore
from ..store.execution_log import GoalLogs
from ..store.state_store import GoalStore
from ..utils.error_handling import ErrorContext, safe_call
from ..utils.rich_logging import ContextLogger, get_execution_logger
from .approvals import ApprovalRegistry
from .config import GoalDefaults
from .evaluator import ProgressEvaluator
from .events import EventBus, EventType, event_payload
from .goal import ApprovalDecision, EvaluationVerdict, Goal, GoalStatus, IterationRecord
from .governor import BlockKind, BudgetGovernor, GovernanceReport, is_quality_gate_due
from .notifications import Notifier

logger = logging.getLogger(__name__)

COMPLETION_SCORE = 95

# Halted goals must go through an explicit resume (back to pending) first
RUNNABLE_GOAL_STATUSES = frozenset({
    GoalStatus.PENDING, GoalStatus.RUNNING, GoalStatus.EVALUATING, GoalStatus.PAUSED,
})


def build_iteration_prompt(goal: Goal, learning_context: Optional[str] = None) -> str:
    """Prompt for the next working turn of ``goal``."""
    criteria = "\n".join(f"{i + 1}. {c}" for i, c in enumerate(goal.criteria))
    sections = [
        "You are working toward the following goal:",
        f"## Goal\n{goal.goal}",
        f"## Acceptance Criteria\n{criteria or '(none specified)'}",
    ]

    # Prior experience only helps orient the very first turn
    if goal.usage.iterations == 0 and learning_context:
        sections.append(learning_context.strip())

    progress = [
        f"- Iteration: {goal.usage.iterations + 1} of {goal.budget.max_iterations}",
        f"- Tokens used: {goal.usage.total_tokens}",
    ]
    evaluation = goal.last_evaluation
    if evaluation:
        progress.append(f"- Last progress score: {evaluation.progress_score}/100")
        progress.append(f"- Last assessment: {evaluation.assessment}")
        unmet = evaluation.unmet_criteria
        if unmet:
            progress.append(f"- Unmet criteria: {'; '.join(c.criterion for c in unmet)}")
    sections.append("## Progress\n" + "\n".join(progress))

    if goal.last_suggested_action:
        sections.append(f"## Suggested Next Action\n{goal.last_suggested_action}")

    sections.append("Continue working toward the goal. Focus on the unmet acceptance criteria.")
    return "\n\n".join(sections)


class GoalLoopEngine:
    """Runs goal loops. One engine serves many goals; state lives in the store."""

    def __init__(
        self,
        store: GoalStore,
        executor: AgentTurnExecutor,
        settings: Optional[GoalDefaults] = None,
        governor: Optional[BudgetGovernor] = None,
        evaluator: Optional[ProgressEvaluator] = None,
        approvals: Optional[ApprovalRegistry] = None,
        notifier: Optional[Notifier] = None,
        events: Optional[EventBus] = None,
        learning: Optional[LearningStore] = None,
    ):
        self.store = store
        self.executor = executor
        self.settings = settings or GoalDefaults()
        self.governor = governor or BudgetGovernor()
        self.evaluator = evaluator or ProgressEvaluator(executor)
        self.approvals = approvals or ApprovalRegistry()
        self.notifier = notifier or Notifier()
        self.events = events or EventBus()
        self.learning = learning or NullLearningStore()

    def logs_for(self, goal_id: str) -> GoalLogs:
        return GoalLogs(self.store.log_dir(goal_id))

    async def run(self, goal_id: str, cancel_event: Optional[asyncio.Event] = None) -> Optional[Goal]:
        """Drive ``goal_id`` until it halts, pauses without approval, or is cancelled.

        Unexpected errors inside the loop mark the goal failed; they are not
        raised to the caller.
        """
        cancel = cancel_event or asyncio.Event()
        log = get_execution_logger(__name__, goal_id)

        goal = self.store.require(goal_id)
        if GoalStatus(goal.status) not in RUNNABLE_GOAL_STATUSES:
            log.info(f"Goal is {goal.status}, not starting loop")
            return goal

        # A crash or shutdown mid-evaluation leaves the goal evaluating
        interrupted_evaluation = goal.status == GoalStatus.EVALUATING
        goal = self.store.update(goal_id, self._begin)
        log.phase_change(GoalStatus.RUNNING.value)
        await self.notifier.send(goal.notify, f"Goal started: {goal.goal} [{goal.id}]")
        self.events.fire(EventType.GOAL_STARTED, **event_payload(goal))

        try:
            if interrupted_evaluation:
                log.info(f"Resuming interrupted evaluation after iteration {goal.usage.iterations}")
                if await self._evaluate(goal, self.logs_for(goal_id), cancel, log):
                    return self.store.get(goal_id)
            await self._loop(goal_id, cancel, log)
        except Exception as e:
            if cancel.is_set():
                log.warning(f"Goal loop raised after cancellation: {e}")
            else:
                await self._fail(goal_id, e, log)
        return self.store.get(goal_id)

    @staticmethod
    def _begin(goal: Goal) -> None:
        goal.transition_to(GoalStatus.RUNNING)
        if goal.usage.started_at is None:
            goal.usage.started_at = datetime.now(UTC)

    async def _loop(self, goal_id: str, cancel: asyncio.Event, log: ContextLogger) -> None:
        logs = self.logs_for(goal_id)

        while not cancel.is_set():
            goal = self.store.require(goal_id)
            if goal.status != GoalStatus.RUNNING:
                log.info(f"Goal is no longer running (status: {goal.status}), exiting loop")
                return

            report = await self.governor.check_goal(goal)
            if not report.allowed:
                await self._halt(goal, report, log)
                return
            for warning in report.warnings:
                log.warning(warning)
                await self.notifier.send(goal.notify, f"Goal warning [{goal.id}]: {warning}")

            if is_quality_gate_due(goal):
                if not await self._pass_quality_gate(goal, cancel, log):
                    return
                # Re-read and re-check governance before doing the work
                continue

            result = await self._run_iteration(goal, logs, cancel, log)
            if result is None:
                return

            goal = self.store.require(goal_id)
            if goal.usage.iterations % goal.eval_config.eval_every == 0:
                if await self._evaluate(goal, logs, cancel, log):
                    return

            await self._sleep(cancel, self.settings.loop_delay_seconds)

        log.info("Goal loop cancelled")

    async def _run_iteration(
        self,
        goal: Goal,
        logs: GoalLogs,
        cancel: asyncio.Event,
        log: ContextLogger,
    ) -> Optional[TurnResult]:
        """One working turn. Returns None when the result had to be discarded."""
        learning_context = None
        if goal.usage.iterations == 0:
            learning_context = safe_call(
                self.learning.learning_context, goal.goal,
                error_message="Learning context lookup failed",
            )
            if learning_context:
                log.info("Injecting insights from similar past goals")

        iteration = goal.usage.iterations + 1
        log.progress(f"Iteration {iteration}/{goal.budget.max_iterations}")
        started = time.monotonic()
        result = await run_turn(self.executor, TurnRequest(
            session_key=goal.session_key(),
            prompt=build_iteration_prompt(goal, learning_context),
            agent_id=goal.agent_id,
        ))
        duration_ms = int((time.monotonic() - started) * 1000)

        if cancel.is_set():
            log.info(f"Discarding iteration {iteration} result: loop cancelled")
            return None

        current = self.store.require(goal.id)
        if current.status != GoalStatus.RUNNING:
            log.info(f"Discarding iteration {iteration} result: goal is {current.status}")
            return None

        logs.iterations.append(IterationRecord(
            goal_id=goal.id,
            iteration=iteration,
            status=result.status.value,
            summary=result.summary,
            output_text=result.output_text,
            error=result.error,
            tokens=result.total_tokens,
            duration_ms=duration_ms,
        ))

        def _record_usage(g: Goal) -> None:
            g.usage.iterations = max(g.usage.iterations, iteration)
            g.usage.total_tokens += result.total_tokens
            if result.status.value == "error":
                g.usage.errors += 1
                g.usage.consecutive_errors += 1
            else:
                g.usage.consecutive_errors = 0

        updated = self.store.update(goal.id, _record_usage)
        if result.ok:
            log.info(f"Iteration {iteration} ok ({result.total_tokens} tokens)")
        else:
            log.warning(
                f"Iteration {iteration} {result.status.value}: {result.error or 'no detail'} "
                f"(consecutive errors: {updated.usage.consecutive_errors})"
            )
        self.events.fire(EventType.GOAL_ITERATION, **event_payload(updated, iteration=iteration))
        return result

    async def _evaluate(
        self,
        goal: Goal,
        logs: GoalLogs,
        cancel: asyncio.Event,
        log: ContextLogger,
    ) -> bool:
        """Evaluate and apply the verdict. Returns True when the loop must exit."""
        goal = self.store.update(goal.id, lambda g: g.transition_to(GoalStatus.EVALUATING))
        log.phase_change(GoalStatus.EVALUATING.value)

        verdict = await self.evaluator.evaluate(goal, logs)
        if cancel.is_set():
            log.info("Discarding evaluation: loop cancelled")
            return True

        score = verdict.progress_score

        def _apply(g: Goal) -> None:
            g.last_evaluation = verdict
            g.last_suggested_action = verdict.suggested_next_action
            g.evaluation_scores.append(score)
            if g.status != GoalStatus.EVALUATING:
                # Stopped externally while the evaluator ran
                return
            if score >= COMPLETION_SCORE and not verdict.should_continue:
                g.transition_to(GoalStatus.COMPLETED, f"Goal completed with score {score}/100")
            elif not verdict.should_continue:
                g.transition_to(GoalStatus.STOPPED, f"Evaluator recommended stop: {verdict.assessment}")
            else:
                g.transition_to(GoalStatus.RUNNING)

        goal = self.store.update(goal.id, _apply)
        log.info(f"Evaluation: {score}/100 ({verdict.source}) {verdict.assessment}")

        if goal.status == GoalStatus.COMPLETED:
            log.phase_change(GoalStatus.COMPLETED.value)
            await self.notifier.send(
                goal.notify, f"Goal COMPLETED: {goal.goal} [{goal.id}] - Score: {score}/100"
            )
            self.events.fire(EventType.GOAL_COMPLETED, **event_payload(goal, score=score))
            self._record_learning(goal, "completed")
            return True

        if goal.status == GoalStatus.STOPPED:
            log.phase_change(GoalStatus.STOPPED.value)
            await self.notifier.send(
                goal.notify, f"Goal stopped by evaluator: {goal.goal} [{goal.id}] - {verdict.assessment}"
            )
            self.events.fire(
                EventType.GOAL_FAILED, **event_payload(goal, score=score, error=goal.stop_reason)
            )
            self._record_learning(goal, "failed")
            return True

        if goal.status != GoalStatus.RUNNING:
            return True

        # A fresh score can reveal a stall the pre-iteration check could not see
        report = await self.governor.check_goal(goal)
        if not report.allowed:
            await self._halt(goal, report, log)
            return True

        log.phase_change(GoalStatus.RUNNING.value)
        await self.notifier.send(goal.notify, self._checkpoint_message(goal, verdict))
        return False

    @staticmethod
    def _checkpoint_message(goal: Goal, verdict: EvaluationVerdict) -> str:
        message = (
            f"Goal checkpoint [{goal.id}] - Iteration {goal.usage.iterations}, "
            f"Score: {verdict.progress_score}/100. {verdict.assessment}"
        )
        if verdict.suggested_next_action:
            message += f" Next: {verdict.suggested_next_action}"
        return message

    async def _halt(self, goal: Goal, report: GovernanceReport, log: ContextLogger) -> None:
        """Persist the terminal status that matches the governor's block kind."""
        status = GoalStatus.BUDGET_EXCEEDED if report.kind.exhausts_budget else GoalStatus.STOPPED

        def _stop(g: Goal) -> None:
            if g.status == GoalStatus.RUNNING:
                g.transition_to(status, report.reason)

        goal = self.store.update(goal.id, _stop)
        if goal.status != status:
            return

        log.phase_change(status.value)
        log.info(f"Goal stopped: {report.reason}")
        await self.notifier.send(goal.notify, f"Goal stopped: {goal.goal} [{goal.id}] - {report.reason}")

        last_score = goal.evaluation_scores[-1] if goal.evaluation_scores else 0
        if report.kind == BlockKind.STALL:
            self.events.fire(EventType.GOAL_STALLED, **event_payload(goal, score=last_score))
            self._record_learning(goal, "stalled")
        else:
            self.events.fire(
                EventType.GOAL_FAILED, **event_payload(goal, score=last_score, error=report.reason)
            )
            self._record_learning(goal, "failed")

    def _persisted_decision(self, goal_id: str) -> Optional[ApprovalDecision]:
        """Decision written by another process, or a reject if the goal was stopped meanwhile."""
        goal = self.store.get(goal_id)
        if goal is None or goal.status != GoalStatus.PAUSED:
            return ApprovalDecision.REJECTED
        return ApprovalDecision(goal.pending_approval) if goal.pending_approval else None

    async def _pass_quality_gate(self, goal: Goal, cancel: asyncio.Event, log: ContextLogger) -> bool:
        """Pause for approval. Returns True when the goal may run the gated iteration."""
        iteration = goal.usage.iterations + 1
        decision = ApprovalDecision(goal.pending_approval) if goal.pending_approval else None

        if decision is None:
            goal = self.store.update(goal.id, lambda g: g.transition_to(GoalStatus.PAUSED))
            log.phase_change(GoalStatus.PAUSED.value)
            gate = goal.quality_gate_for(iteration)
            prompt = f" {gate.message}" if gate and gate.message else ""
            await self.notifier.send(
                goal.notify,
                f"Approval needed for goal [{goal.id}] at iteration {iteration}.{prompt} "
                f"Reply: approve {goal.id} or reject {goal.id}",
            )
            decision = await self.approvals.wait(
                goal.id,
                timeout=self.settings.approval_timeout_seconds,
                poll=lambda: self._persisted_decision(goal.id),
                poll_interval=self.settings.approval_poll_seconds,
            )

        if cancel.is_set():
            log.info("Cancelled while waiting for approval; goal stays paused")
            return False

        timed_out = decision == ApprovalDecision.TIMEOUT
        if timed_out:
            approved = self.settings.approval_timeout_action == "auto-approve"
        else:
            approved = decision == ApprovalDecision.APPROVED
        reason = "Quality gate approval timed out" if timed_out else "Quality gate rejected"

        def _resolve(g: Goal) -> None:
            g.pending_approval = None
            if g.status not in (GoalStatus.PAUSED, GoalStatus.RUNNING):
                return
            if approved:
                if iteration not in g.approved_gates:
                    g.approved_gates.append(iteration)
                g.transition_to(GoalStatus.RUNNING)
            else:
                g.transition_to(GoalStatus.STOPPED, reason)

        goal = self.store.update(goal.id, _resolve)
        if goal.status == GoalStatus.RUNNING:
            log.phase_change(GoalStatus.RUNNING.value)
            log.info(f"Quality gate at iteration {iteration} approved" + (" (timeout)" if timed_out else ""))
            return True

        if goal.status == GoalStatus.STOPPED and goal.stop_reason == reason:
            log.phase_change(GoalStatus.STOPPED.value)
            await self.notifier.send(goal.notify, f"Goal stopped: {goal.goal} [{goal.id}] - {reason}")
            self.events.fire(EventType.GOAL_FAILED, **event_payload(goal, error=reason))
        return False

    async def _fail(self, goal_id: str, error: Exception, log: ContextLogger) -> None:
        log.error(f"Goal loop failed: {error}", exc_info=True)

        def _mark_failed(g: Goal) -> None:
            if g.can_transition_to(GoalStatus.FAILED):
                g.transition_to(GoalStatus.FAILED, str(error))

        with ErrorContext(f"marking goal {goal_id} failed", raise_on_error=False, log_to=logger) as ctx:
            goal = self.store.update(goal_id, _mark_failed)
        if ctx.error is not None or goal.status != GoalStatus.FAILED:
            return

        await self.notifier.send(goal.notify, f"Goal FAILED: {goal.goal} [{goal.id}] - {goal.stop_reason}")
        self.events.fire(EventType.GOAL_FAILED, **event_payload(goal, error=goal.stop_reason))
        self._record_learning(goal, "failed")

    def _record_learning(self, goal: Goal, outcome: str) -> None:
        evaluation = goal.last_evaluation
        criteria = evaluation.criteria_status if evaluation else []
        safe_call(
            self.learning.record,
            goal.id,
            goal.goal,
            outcome,
            score=evaluation.progress_score if evaluation else 0,
            iterations=goal.usage.iterations,
            duration_seconds=goal.usage.elapsed_seconds(),
            tokens_used=goal.usage.total_tokens,
            what_worked=[c.criterion for c in criteria if c.met],
            what_failed=[c.criterion for c in criteria if not c.met],
            suggestions=[evaluation.suggested_next_action] if evaluation and evaluation.suggested_next_action else [],
            error_message=f"Failed to record learning for goal {goal.id}",
            log_to=logger,
        )

    @staticmethod
    async def _sleep(cancel: asyncio.Event, seconds: float) -> None:
        """Inter-iteration delay that ends early on cancellation."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
