"""Scheduler primitives for a plan's task graph.

Everything here is a pure function over a list of tasks. Functions that
change statuses mutate the tasks in place and return what they changed so
the caller can log transitions; persisting the result is the caller's job.
"""

from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

from ..core.plan import PlanTask, PlanTaskStatus
from ..errors import DagValidationError

# (from_status, to_status) pairs keyed by task id
StatusChanges = Dict[str, Tuple[str, str]]


def validate_dag(tasks: List[PlanTask]) -> List[str]:
    """Return every structural problem in the graph; an empty list means valid.

    Checks duplicate ids, self-dependencies, dependencies on unknown ids and,
    only when those pass, cycles.
    """
    problems: List[str] = []

    seen = set()
    for task in tasks:
        if task.id in seen:
            problems.append(f"Duplicate task ID: {task.id}")
        seen.add(task.id)

    for task in tasks:
        for dep in task.depends_on:
            if dep == task.id:
                problems.append(f"Task {task.id} depends on itself")
            elif dep not in seen:
                problems.append(f"Task {task.id} depends on unknown task {dep}")

    if not problems and _has_cycle(tasks):
        problems.append("Cycle detected in task dependencies")

    return problems


def ensure_valid_dag(tasks: List[PlanTask]) -> None:
    """Raise :class:`DagValidationError` if ``tasks`` is not a valid DAG."""
    problems = validate_dag(tasks)
    if problems:
        raise DagValidationError(problems)


def _has_cycle(tasks: List[PlanTask]) -> bool:
    # Kahn's algorithm: any node never reaching in-degree 0 sits on a cycle
    in_degree = {t.id: len(t.depends_on) for t in tasks}
    dependants: Dict[str, List[str]] = {t.id: [] for t in tasks}
    for task in tasks:
        for dep in task.depends_on:
            dependants[dep].append(task.id)

    queue = deque(task_id for task_id, degree in in_degree.items() if degree == 0)
    processed = 0
    while queue:
        task_id = queue.popleft()
        processed += 1
        for nxt in dependants[task_id]:
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                queue.append(nxt)

    return processed < len(tasks)


def topological_order(tasks: List[PlanTask]) -> List[str]:
    """Task ids in dependency order (ties keep list order). Assumes a valid DAG."""
    order: List[str] = []
    placed = set()
    remaining = list(tasks)
    while remaining:
        progressed = False
        for task in list(remaining):
            if all(dep in placed for dep in task.depends_on):
                order.append(task.id)
                placed.add(task.id)
                remaining.remove(task)
                progressed = True
        if not progressed:
            raise DagValidationError(["Cycle detected in task dependencies"])
    return order


def completed_ids(tasks: Iterable[PlanTask]) -> set:
    return {t.id for t in tasks if t.is_(PlanTaskStatus.COMPLETED)}


def update_ready_tasks(tasks: List[PlanTask]) -> StatusChanges:
    """Promote pending tasks whose dependencies are all completed to ready."""
    done = completed_ids(tasks)
    changes: StatusChanges = {}
    for task in tasks:
        if not task.is_(PlanTaskStatus.PENDING):
            continue
        if all(dep in done for dep in task.depends_on):
            task.status = PlanTaskStatus.READY.value
            changes[task.id] = (PlanTaskStatus.PENDING.value, PlanTaskStatus.READY.value)
    return changes


def ready_tasks(tasks: List[PlanTask]) -> List[PlanTask]:
    return [t for t in tasks if t.is_(PlanTaskStatus.READY)]


def skip_downstream(tasks: List[PlanTask], failed_task_id: str) -> List[str]:
    """Mark every pending/ready task that transitively depends on ``failed_task_id`` as skipped."""
    blocked = {failed_task_id}
    skipped: List[str] = []
    changed = True
    while changed:
        changed = False
        for task in tasks:
            if task.id in blocked:
                continue
            if not (task.is_(PlanTaskStatus.PENDING) or task.is_(PlanTaskStatus.READY)):
                continue
            if any(dep in blocked for dep in task.depends_on):
                task.status = PlanTaskStatus.SKIPPED.value
                blocked.add(task.id)
                skipped.append(task.id)
                changed = True
    return skipped


@dataclass
class SchedulerState:
    """Status counts for one plan and what they imply for the scheduler."""
    counts: Dict[str, int] = field(default_factory=dict)
    total: int = 0

    def count(self, status: PlanTaskStatus) -> int:
        return self.counts.get(status.value, 0)

    @property
    def has_ready(self) -> bool:
        return self.count(PlanTaskStatus.READY) > 0

    @property
    def has_running(self) -> bool:
        return self.count(PlanTaskStatus.RUNNING) > 0

    @property
    def all_done(self) -> bool:
        return not (
            self.count(PlanTaskStatus.PENDING)
            or self.count(PlanTaskStatus.READY)
            or self.count(PlanTaskStatus.RUNNING)
        )

    @property
    def deadlocked(self) -> bool:
        # Pending work whose dependencies can never complete
        return (
            self.count(PlanTaskStatus.PENDING) > 0
            and not self.has_ready
            and not self.has_running
        )

    def progress_line(self) -> str:
        line = f"{self.count(PlanTaskStatus.COMPLETED)}/{self.total} tasks done"
        if self.count(PlanTaskStatus.FAILED):
            line += f", {self.count(PlanTaskStatus.FAILED)} failed"
        if self.count(PlanTaskStatus.SKIPPED):
            line += f", {self.count(PlanTaskStatus.SKIPPED)} skipped"
        return line


def analyze(tasks: List[PlanTask]) -> SchedulerState:
    counts = Counter(PlanTaskStatus(t.status).value for t in tasks)
    return SchedulerState(counts=dict(counts), total=len(tasks))


def merge_replanned(current: List[PlanTask], replanned: List[PlanTask]) -> List[PlanTask]:
    """Completed tasks kept untouched, followed by the replanner's tasks.

    Replanned tasks whose id collides with a completed task are dropped so
    finished work is never redone or altered.
    """
    completed = [t for t in current if t.is_(PlanTaskStatus.COMPLETED)]
    done = {t.id for t in completed}
    fresh = [t for t in replanned if t.id not in done]
    return completed + fresh
