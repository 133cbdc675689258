"""Service manager: owns every running goal and plan loop in this process.

The registry maps an execution id to its asyncio task and cancellation
event. Loops are bounded per kind; executions that do not fit stay
untouched on disk and are picked up by ``reconcile`` once capacity frees.
Control operations (create/stop/resume/approve/reject) go through the
stores, so they work the same from the serving process or from a CLI
process that never starts a loop.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..errors import InvalidTransitionError
from ..llm.base import AgentTurnExecutor
from ..memory.learning_store import LearningStore, NullLearningStore
from ..store.state_store import GoalStore, PlanStore
from ..workflow.plan_engine import PlanEngine
from .approvals import ApprovalRegistry
from .config import OrchestratorConfig
from .evaluator import ProgressEvaluator
from .events import EventBus, EventSink, JsonlEventSink
from .goal import ApprovalDecision, Goal, GoalBudget, GoalEvalConfig, GoalStatus, NotifyTarget, QualityGate
from .goal_engine import RUNNABLE_GOAL_STATUSES, GoalLoopEngine
from .governor import BudgetGovernor
from .notifications import LogChannel, NotificationChannel, Notifier, NullChannel
from .plan import ACTIVE_PLAN_STATUSES, Plan, PlanBudget, PlanStatus
from .usage import UsageSummarySource

logger = logging.getLogger(__name__)

GOAL = "goal"
PLAN = "plan"

# Paused goals re-enter their gate wait when resumed
RESUMABLE_GOAL_STATUSES = RUNNABLE_GOAL_STATUSES
RESUMABLE_PLAN_STATUSES = ACTIVE_PLAN_STATUSES


def new_execution_id(kind: str) -> str:
    return f"{kind}-{uuid.uuid4().hex[:8]}"


@dataclass
class ActiveExecution:
    """Cancellation handle for one running loop."""
    kind: str
    task: asyncio.Task
    cancel: asyncio.Event


class ServiceManager:
    """Starts, bounds, resumes and stops execution loops."""

    def __init__(
        self,
        config: OrchestratorConfig,
        executor: AgentTurnExecutor,
        goal_store: Optional[GoalStore] = None,
        plan_store: Optional[PlanStore] = None,
        usage_source: Optional[UsageSummarySource] = None,
        notification_channel: Optional[NotificationChannel] = None,
        event_sinks: Optional[List[EventSink]] = None,
        learning: Optional[LearningStore] = None,
    ):
        self.config = config
        state_dir = config.state_dir
        self.goal_store = goal_store or GoalStore(state_dir)
        self.plan_store = plan_store or PlanStore(state_dir)

        if notification_channel is None:
            notification_channel = LogChannel() if config.notifications.enabled else NullChannel()
        default_target = None
        if config.notifications.enabled and config.notifications.recipient:
            default_target = NotifyTarget(
                channel=config.notifications.channel,
                recipient=config.notifications.recipient,
            )
        self.notifier = Notifier(notification_channel, default_target)

        if event_sinks is None:
            event_sinks = [JsonlEventSink(state_dir / "events.jsonl")]
        self.events = EventBus(event_sinks)

        if learning is None:
            learning = (
                LearningStore(state_dir / "learnings.json", max_entries=config.learning.max_entries)
                if config.learning.enabled
                else NullLearningStore()
            )
        self.learning = learning

        self.approvals = ApprovalRegistry()
        governor = BudgetGovernor(usage_source)
        self.goal_engine = GoalLoopEngine(
            store=self.goal_store,
            executor=executor,
            settings=config.goals,
            governor=governor,
            evaluator=ProgressEvaluator(executor),
            approvals=self.approvals,
            notifier=self.notifier,
            events=self.events,
            learning=self.learning,
        )
        self.plan_engine = PlanEngine(
            store=self.plan_store,
            executor=executor,
            settings=config.plans,
            governor=governor,
            notifier=self.notifier,
            events=self.events,
        )

        self._active: Dict[str, ActiveExecution] = {}
        self._running = False

    # -- lifecycle ------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def active_ids(self, kind: Optional[str] = None) -> List[str]:
        return [eid for eid, entry in self._active.items() if kind is None or entry.kind == kind]

    def is_active(self, execution_id: str) -> bool:
        return execution_id in self._active

    def _capacity(self, kind: str) -> int:
        return self.config.goals.max_concurrent if kind == GOAL else self.config.plans.max_concurrent

    def _has_capacity(self, kind: str) -> bool:
        return len(self.active_ids(kind)) < self._capacity(kind)

    async def start(self) -> List[str]:
        """Resume every persisted execution that was in flight, up to each kind's cap."""
        self._running = True
        logger.info(f"Service starting (state dir: {self.config.state_dir})")
        started = self.reconcile()
        if started:
            logger.info(f"Resumed {len(started)} execution(s): {', '.join(started)}")
        return started

    def reconcile(self) -> List[str]:
        """Start loops for resumable executions that have no loop yet."""
        if not self._running:
            return []

        started: List[str] = []
        for goal in self.goal_store.list():
            if not self._has_capacity(GOAL):
                break
            if goal.id not in self._active and GoalStatus(goal.status) in RESUMABLE_GOAL_STATUSES:
                if self.start_goal(goal.id):
                    started.append(goal.id)

        for plan in self.plan_store.list():
            if not self._has_capacity(PLAN):
                break
            if plan.id not in self._active and PlanStatus(plan.status) in RESUMABLE_PLAN_STATUSES:
                if self.start_plan(plan.id):
                    started.append(plan.id)
        return started

    async def stop(self) -> None:
        """Cooperatively cancel every loop and wait for them to wind down.

        Loops stop between steps and keep their last committed state. Tasks
        still running after the grace period are cancelled outright.
        """
        self._running = False
        entries = list(self._active.values())
        if not entries:
            return

        logger.info(f"Service stopping, cancelling {len(entries)} execution(s)")
        for entry in entries:
            entry.cancel.set()
        resolved = self.approvals.resolve_all(ApprovalDecision.TIMEOUT)
        if resolved:
            logger.info(f"Released {resolved} pending approval wait(s)")

        tasks = [entry.task for entry in entries]
        _, pending = await asyncio.wait(tasks, timeout=self.config.shutdown_grace_seconds)
        for task in pending:
            logger.warning(f"Execution {task.get_name()} did not stop in time, cancelling")
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._active.clear()

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Serve until ``stop_event`` is set, picking up new work periodically."""
        await self.start()
        try:
            while not stop_event.is_set():
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.config.scan_interval_seconds)
                except asyncio.TimeoutError:
                    self.reconcile()
        finally:
            await self.stop()

    def _launch(self, kind: str, execution_id: str, coro_factory) -> bool:
        if execution_id in self._active:
            logger.warning(f"{kind.capitalize()} {execution_id} is already running")
            return False
        if not self._has_capacity(kind):
            logger.warning(
                f"Cannot start {kind} {execution_id}: max concurrent {kind}s reached "
                f"({len(self.active_ids(kind))}/{self._capacity(kind)})"
            )
            return False

        cancel = asyncio.Event()
        task = asyncio.create_task(coro_factory(execution_id, cancel), name=f"{kind}:{execution_id}")
        self._active[execution_id] = ActiveExecution(kind=kind, task=task, cancel=cancel)
        task.add_done_callback(lambda t: self._on_done(execution_id, t))
        logger.info(f"Started {kind} loop {execution_id}")
        return True

    def _on_done(self, execution_id: str, task: asyncio.Task) -> None:
        entry = self._active.get(execution_id)
        if entry is not None and entry.task is task:
            del self._active[execution_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Loop {execution_id} threw unexpectedly: {task.exception()}")
        if self._running:
            self.reconcile()

    def start_goal(self, goal_id: str) -> bool:
        self.goal_store.require(goal_id)
        return self._launch(GOAL, goal_id, self.goal_engine.run)

    def start_plan(self, plan_id: str) -> bool:
        self.plan_store.require(plan_id)
        return self._launch(PLAN, plan_id, self.plan_engine.run)

    def _signal(self, execution_id: str) -> None:
        entry = self._active.get(execution_id)
        if entry is not None:
            entry.cancel.set()

    # -- goals ----------------------------------------------------------

    def create_goal(
        self,
        goal: str,
        criteria: Optional[List[str]] = None,
        *,
        max_iterations: Optional[int] = None,
        max_tokens: Optional[int] = None,
        max_time_seconds: Optional[float] = None,
        eval_every: Optional[int] = None,
        eval_model: Optional[str] = None,
        stall_threshold: Optional[int] = None,
        quality_gates: Optional[List[int]] = None,
        notify: Optional[NotifyTarget] = None,
        agent_id: Optional[str] = None,
    ) -> Goal:
        """Persist a new pending goal and start it if this process is serving."""
        defaults = self.config.goals
        record = Goal(
            id=new_execution_id(GOAL),
            goal=goal,
            criteria=list(criteria or []),
            budget=GoalBudget(
                max_iterations=max_iterations or defaults.default_max_iterations,
                max_tokens=max_tokens or defaults.default_max_tokens,
                max_time_seconds=max_time_seconds or defaults.default_max_time_seconds,
                provider_usage_threshold=defaults.default_provider_usage_threshold,
            ),
            eval_config=GoalEvalConfig(
                eval_every=eval_every or defaults.default_eval_every,
                eval_model=eval_model,
                stall_threshold=stall_threshold or defaults.default_stall_threshold,
                min_progress_delta=defaults.default_min_progress_delta,
                consecutive_error_limit=defaults.default_consecutive_error_limit,
            ),
            quality_gates=[QualityGate(at_iteration=n) for n in sorted(set(quality_gates or []))],
            notify=notify,
            agent_id=agent_id,
        )
        self.goal_store.save(record)
        logger.info(f"Created goal {record.id}: {goal}")
        if self._running:
            self.start_goal(record.id)
        return record

    def stop_goal(self, goal_id: str, reason: str = "Stopped by user") -> Goal:
        def _stop(g: Goal) -> None:
            if GoalStatus(g.status) in (GoalStatus.STOPPED, GoalStatus.BUDGET_EXCEEDED):
                return
            g.pending_approval = None
            g.transition_to(GoalStatus.STOPPED, reason)

        goal = self.goal_store.update(goal_id, _stop)
        self._signal(goal_id)
        self.approvals.resolve(goal_id, ApprovalDecision.REJECTED)
        logger.info(f"Stopped goal {goal_id}: {reason}")
        return goal

    def resume_goal(
        self,
        goal_id: str,
        add_iterations: int = 0,
        add_tokens: int = 0,
        add_time_seconds: float = 0,
    ) -> Goal:
        """Reset a stopped or budget-exceeded goal to pending, optionally raising its budget."""
        def _resume(g: Goal) -> None:
            if GoalStatus(g.status) not in (GoalStatus.STOPPED, GoalStatus.BUDGET_EXCEEDED):
                raise InvalidTransitionError(g.id, str(g.status), GoalStatus.PENDING.value)
            g.budget.max_iterations += add_iterations
            g.budget.max_tokens += add_tokens
            g.budget.max_time_seconds += add_time_seconds
            g.evaluation_scores = []
            g.usage.consecutive_errors = 0
            g.transition_to(GoalStatus.PENDING)
            g.stop_reason = None

        goal = self.goal_store.update(goal_id, _resume)
        logger.info(f"Resumed goal {goal_id}")
        if self._running:
            self.start_goal(goal_id)
        return goal

    def _decide(self, goal_id: str, decision: ApprovalDecision) -> bool:
        if self.approvals.resolve(goal_id, decision):
            return True

        # No wait in this process: leave the decision for whichever loop owns the goal
        decided = []

        def _persist(g: Goal) -> None:
            if g.status == GoalStatus.PAUSED:
                g.pending_approval = decision.value
                decided.append(True)

        self.goal_store.update(goal_id, _persist)
        if decided:
            logger.info(f"Recorded {decision.value} for paused goal {goal_id}")
        else:
            logger.warning(f"Goal {goal_id} is not waiting for approval")
        return bool(decided)

    def approve_goal(self, goal_id: str) -> bool:
        return self._decide(goal_id, ApprovalDecision.APPROVED)

    def reject_goal(self, goal_id: str) -> bool:
        return self._decide(goal_id, ApprovalDecision.REJECTED)

    # -- plans ----------------------------------------------------------

    def create_plan(
        self,
        goal: str,
        criteria: Optional[List[str]] = None,
        *,
        max_agent_turns: Optional[int] = None,
        max_tokens: Optional[int] = None,
        max_time_seconds: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        max_retries: Optional[int] = None,
        replan_threshold: Optional[float] = None,
        notify: Optional[NotifyTarget] = None,
    ) -> Plan:
        """Persist a new plan in ``planning`` and start it if this process is serving."""
        defaults = self.config.plans
        record = Plan(
            id=new_execution_id(PLAN),
            goal=goal,
            criteria=list(criteria or []),
            budget=PlanBudget(
                max_agent_turns=max_agent_turns or defaults.max_agent_turns,
                max_tokens=max_tokens or defaults.max_tokens,
                max_time_seconds=max_time_seconds or defaults.max_time_seconds,
                max_concurrency=max_concurrency or defaults.max_concurrency,
                max_retries=defaults.max_retries if max_retries is None else max_retries,
                replan_threshold=replan_threshold or defaults.replan_threshold,
                provider_usage_threshold=self.config.goals.default_provider_usage_threshold,
            ),
            notify=notify,
        )
        self.plan_store.save(record)
        logger.info(f"Created plan {record.id}: {goal}")
        if self._running:
            self.start_plan(record.id)
        return record

    def stop_plan(self, plan_id: str, reason: str = "Stopped by user") -> Plan:
        def _stop(p: Plan) -> None:
            if p.is_active:
                p.transition_to(PlanStatus.STOPPED, reason)

        plan = self.plan_store.update(plan_id, _stop)
        self._signal(plan_id)
        logger.info(f"Stopped plan {plan_id}: {reason}")
        return plan

    def resume_plan(
        self,
        plan_id: str,
        add_agent_turns: int = 0,
        add_tokens: int = 0,
        add_time_seconds: float = 0,
    ) -> Plan:
        """Re-enter planning (no tasks yet) or executing for a stopped or failed plan."""
        def _resume(p: Plan) -> None:
            if PlanStatus(p.status) not in (PlanStatus.STOPPED, PlanStatus.FAILED):
                raise InvalidTransitionError(p.id, str(p.status), PlanStatus.EXECUTING.value)
            p.budget.max_agent_turns += add_agent_turns
            p.budget.max_tokens += add_tokens
            p.budget.max_time_seconds += add_time_seconds
            p.transition_to(PlanStatus.EXECUTING if p.tasks else PlanStatus.PLANNING)
            p.stop_reason = None

        plan = self.plan_store.update(plan_id, _resume)
        logger.info(f"Resumed plan {plan_id}")
        if self._running:
            self.start_plan(plan_id)
        return plan
