"""Tests for the aggregate goal/plan documents and JSONL logs."""

import json

import pytest

from autopilot.core.goal import Goal, GoalStatus, IterationRecord
from autopilot.core.plan import Plan, PlanStatus, PlanTask
from autopilot.errors import ExecutionNotFoundError, InvalidTransitionError, PersistenceError
from autopilot.store.execution_log import GoalLogs
from autopilot.utils.atomic_io import atomic_write_json, atomic_write_text


class TestGoalStore:
    def test_save_and_reload(self, goal_store, state_dir):
        goal_store.save(Goal(id="goal-1", goal="Write docs", criteria=["README exists"]))

        loaded = goal_store.require("goal-1")

        assert loaded.goal == "Write docs"
        assert loaded.status == GoalStatus.PENDING
        document = json.loads((state_dir / "goals.json").read_text())
        assert document["version"] == 1
        assert "goal-1" in document["goals"]

    def test_missing_goal(self, goal_store):
        assert goal_store.get("nope") is None
        with pytest.raises(ExecutionNotFoundError):
            goal_store.require("nope")

    def test_update_returns_copy_and_persists(self, goal_store):
        goal_store.save(Goal(id="goal-1", goal="Write docs"))

        updated = goal_store.update("goal-1", lambda g: g.transition_to(GoalStatus.RUNNING))
        updated.goal = "mutated locally"

        assert goal_store.require("goal-1").status == GoalStatus.RUNNING
        assert goal_store.require("goal-1").goal == "Write docs"

    def test_terminal_goal_is_immutable(self, goal_store):
        goal_store.save(Goal(id="goal-1", goal="Write docs", status=GoalStatus.COMPLETED))

        with pytest.raises(InvalidTransitionError):
            goal_store.update("goal-1", lambda g: setattr(g, "goal", "changed"))

    def test_failed_update_writes_nothing(self, goal_store):
        goal_store.save(Goal(id="goal-1", goal="Write docs"))

        def _boom(g):
            g.goal = "half-written"
            raise ValueError("boom")

        with pytest.raises(ValueError):
            goal_store.update("goal-1", _boom)
        assert goal_store.require("goal-1").goal == "Write docs"

    def test_invalid_record_survives_later_writes(self, goal_store, state_dir):
        goal_store.save(Goal(id="goal-1", goal="Write docs"))
        document = json.loads((state_dir / "goals.json").read_text())
        legacy = {"id": "legacy", "goal": "Old format", "status": "archived"}
        document["goals"]["legacy"] = legacy
        (state_dir / "goals.json").write_text(json.dumps(document))

        assert [g.id for g in goal_store.list()] == ["goal-1"]
        goal_store.save(Goal(id="goal-2", goal="Write tests"))
        goal_store.update("goal-1", lambda g: g.transition_to(GoalStatus.RUNNING))

        stored = json.loads((state_dir / "goals.json").read_text())["goals"]
        assert sorted(stored) == ["goal-1", "goal-2", "legacy"]
        assert stored["legacy"] == legacy

    def test_corrupt_document_is_never_overwritten(self, goal_store, state_dir):
        goal_store.save(Goal(id="goal-1", goal="Write docs"))
        goal_store.save(Goal(id="goal-2", goal="Write tests"))
        path = state_dir / "goals.json"
        truncated = path.read_text()[:-3]
        path.write_text(truncated)

        assert goal_store.list() == []
        with pytest.raises(PersistenceError):
            goal_store.save(Goal(id="goal-3", goal="Ship it"))
        with pytest.raises(PersistenceError):
            goal_store.update("goal-1", lambda g: g.transition_to(GoalStatus.RUNNING))
        assert path.read_text() == truncated


class TestPlanStore:
    def test_round_trip_with_tasks(self, plan_store):
        plan = Plan(id="plan-1", goal="Build API", tasks=[
            PlanTask(id="t1", title="Scaffold"),
            PlanTask(id="t2", title="Routes", depends_on=["t1"]),
        ])
        plan_store.save(plan)

        loaded = plan_store.require("plan-1")

        assert loaded.status == PlanStatus.PLANNING
        assert loaded.get_task("t2").depends_on == ["t1"]

    def test_log_dirs_are_per_execution(self, plan_store, state_dir):
        assert plan_store.log_dir("plan-1") == state_dir / "plans" / "plan-1"


class TestExecutionLogs:
    def test_append_and_read_last(self, tmp_path):
        logs = GoalLogs(tmp_path)
        for i in range(1, 6):
            logs.iterations.append(IterationRecord(goal_id="goal-1", iteration=i, status="ok"))

        last = logs.iterations.read(limit=2)

        assert [r.iteration for r in last] == [4, 5]

    def test_truncated_line_is_skipped(self, tmp_path):
        logs = GoalLogs(tmp_path)
        logs.iterations.append(IterationRecord(goal_id="goal-1", iteration=1, status="ok"))
        with open(tmp_path / "iterations.jsonl", "a") as f:
            f.write('{"goal_id": "goal-1", "iter')

        assert len(logs.iterations.read()) == 1

    def test_missing_log_reads_empty(self, tmp_path):
        assert GoalLogs(tmp_path / "none").evaluations.read() == []


class TestAtomicWrite:
    def test_replaces_content_without_temp_files(self, tmp_path):
        target = tmp_path / "doc.json"
        atomic_write_json(target, {"a": 1})
        atomic_write_json(target, {"a": 2})

        assert json.loads(target.read_text()) == {"a": 2}
        assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]

    def test_failure_raises_persistence_error(self, tmp_path):
        target = tmp_path / "occupied"
        target.mkdir()

        with pytest.raises(PersistenceError):
            atomic_write_text(target, "new", max_retries=2)
        assert target.is_dir()
        assert [p.name for p in tmp_path.iterdir()] == ["occupied"]
