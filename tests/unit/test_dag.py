"""Tests for task graph validation and scheduling primitives."""

import pytest

from autopilot.core.plan import PlanTask, PlanTaskStatus
from autopilot.errors import DagValidationError
from autopilot.workflow.dag import (
    analyze,
    ensure_valid_dag,
    merge_replanned,
    ready_tasks,
    skip_downstream,
    topological_order,
    update_ready_tasks,
    validate_dag,
)


def _task(task_id, deps=(), status=PlanTaskStatus.PENDING):
    return PlanTask(id=task_id, title=task_id, depends_on=list(deps), status=status)


class TestValidateDag:
    def test_valid_diamond(self):
        tasks = [_task("a"), _task("b", ["a"]), _task("c", ["a"]), _task("d", ["b", "c"])]
        assert validate_dag(tasks) == []

    def test_duplicate_ids(self):
        assert validate_dag([_task("a"), _task("a")]) == ["Duplicate task ID: a"]

    def test_self_dependency(self):
        assert validate_dag([_task("a", ["a"])]) == ["Task a depends on itself"]

    def test_unknown_dependency(self):
        assert validate_dag([_task("a", ["ghost"])]) == ["Task a depends on unknown task ghost"]

    def test_cycle(self):
        tasks = [_task("a", ["c"]), _task("b", ["a"]), _task("c", ["b"])]
        assert validate_dag(tasks) == ["Cycle detected in task dependencies"]

    def test_cycle_not_reported_alongside_structural_problems(self):
        tasks = [_task("a", ["b"]), _task("b", ["a"]), _task("c", ["zzz"])]
        assert validate_dag(tasks) == ["Task c depends on unknown task zzz"]

    def test_ensure_valid_raises(self):
        with pytest.raises(DagValidationError) as exc_info:
            ensure_valid_dag([_task("a", ["a"])])
        assert exc_info.value.problems == ["Task a depends on itself"]


def test_topological_order_respects_dependencies():
    tasks = [_task("d", ["b", "c"]), _task("c", ["a"]), _task("b", ["a"]), _task("a")]

    order = topological_order(tasks)

    assert order.index("a") < order.index("b") < order.index("d")
    assert order.index("c") < order.index("d")


class TestReadiness:
    def test_promotes_tasks_with_completed_dependencies(self):
        tasks = [
            _task("a", status=PlanTaskStatus.COMPLETED),
            _task("b", ["a"]),
            _task("c", ["b"]),
            _task("d"),
        ]

        changes = update_ready_tasks(tasks)

        assert changes == {"b": ("pending", "ready"), "d": ("pending", "ready")}
        assert [t.id for t in ready_tasks(tasks)] == ["b", "d"]

    def test_failed_dependency_never_satisfies(self):
        tasks = [_task("a", status=PlanTaskStatus.FAILED), _task("b", ["a"])]

        assert update_ready_tasks(tasks) == {}


class TestSkipDownstream:
    def test_skips_transitive_dependants_only(self):
        tasks = [
            _task("a", status=PlanTaskStatus.FAILED),
            _task("b", ["a"]),
            _task("c", ["b"], status=PlanTaskStatus.READY),
            _task("d"),
            _task("e", ["a"], status=PlanTaskStatus.COMPLETED),
        ]

        skipped = skip_downstream(tasks, "a")

        assert sorted(skipped) == ["b", "c"]
        statuses = {t.id: t.status for t in tasks}
        assert statuses == {"a": "failed", "b": "skipped", "c": "skipped", "d": "pending", "e": "completed"}


class TestSchedulerState:
    def test_all_done_counts_terminal_statuses(self):
        tasks = [
            _task("a", status=PlanTaskStatus.COMPLETED),
            _task("b", status=PlanTaskStatus.FAILED),
            _task("c", status=PlanTaskStatus.SKIPPED),
        ]

        state = analyze(tasks)

        assert state.all_done
        assert state.progress_line() == "1/3 tasks done, 1 failed, 1 skipped"

    def test_deadlock_is_pending_with_nothing_runnable(self):
        tasks = [_task("a", status=PlanTaskStatus.FAILED), _task("b", ["a"])]

        state = analyze(tasks)

        assert state.deadlocked
        assert not state.all_done

    def test_running_work_is_not_deadlock(self):
        tasks = [_task("a", status=PlanTaskStatus.RUNNING), _task("b", ["a"])]
        assert not analyze(tasks).deadlocked


class TestMergeReplanned:
    def test_keeps_completed_and_drops_colliding_ids(self):
        current = [
            _task("t1", status=PlanTaskStatus.COMPLETED),
            _task("t2", status=PlanTaskStatus.FAILED),
            _task("t3", ["t2"], status=PlanTaskStatus.SKIPPED),
        ]
        replanned = [_task("t1"), _task("t2b", ["t1"]), _task("t3", ["t2b"])]

        merged = merge_replanned(current, replanned)

        assert [t.id for t in merged] == ["t1", "t2b", "t3"]
        assert merged[0].status == "completed"
        assert merged[2].depends_on == ["t2b"]
        assert validate_dag(merged) == []
