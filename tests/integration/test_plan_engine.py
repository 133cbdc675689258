"""End-to-end plans: decomposition, batched workers, replanning and evaluation."""

import pytest

from autopilot.core.events import EventBus, JsonlEventSink
from autopilot.core.plan import Plan, PlanBudget, PlanStatus, PlanTask, PlanTaskStatus, TaskResult
from autopilot.workflow.plan_engine import PlanEngine
from tests.fakes import ScriptedExecutor, error, ok, tasks_payload

FINAL_OK = {"score": 96, "assessment": "All done", "criteriaStatus": [{"met": True}]}


def _save_plan(store, **overrides) -> Plan:
    defaults = dict(id="plan-1", goal="Build a todo API", criteria=["CRUD endpoints work"])
    defaults.update(overrides)
    return store.save(Plan(**defaults))


def _engine(plan_store, plan_settings, executor, events_path=None) -> PlanEngine:
    events = EventBus([JsonlEventSink(events_path)]) if events_path else None
    return PlanEngine(plan_store, executor, settings=plan_settings, events=events)


def _statuses(plan):
    return {t.id: t.status for t in plan.tasks}


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_independent_tasks_respect_concurrency(self, plan_store, plan_settings, tmp_path):
        _save_plan(plan_store, budget=PlanBudget(max_concurrency=2))
        executor = ScriptedExecutor({
            "planner:": tasks_payload(("t1",), ("t2",), ("t3",)),
            "planner-eval:": FINAL_OK,
        }, delay=0.02)
        events_path = tmp_path / "events.jsonl"

        plan = await _engine(plan_store, plan_settings, executor, events_path).run("plan-1")

        assert plan.status == PlanStatus.COMPLETED
        assert plan.stop_reason == "Plan completed with score 96/100"
        assert plan.final_evaluation.score == 96
        assert set(_statuses(plan).values()) == {"completed"}
        assert executor.max_running == 2
        # planner + 3 workers + final evaluation
        assert plan.usage.agent_turns == 5
        assert plan.usage.total_tokens == 500
        types = [e.type for e in JsonlEventSink(events_path).read()]
        assert types[0] == "plan.started"
        assert types.count("plan.task.completed") == 3
        assert types[-1] == "plan.completed"

    @pytest.mark.asyncio
    async def test_dependencies_run_in_order_with_context(self, plan_store, plan_settings):
        _save_plan(plan_store)
        executor = ScriptedExecutor({
            "planner:": tasks_payload(("t1",), ("t2", ["t1"]), ("t3", ["t2"])),
            "planner-worker:plan-1:t1": "Created the schema",
            "planner-eval:": FINAL_OK,
        })

        plan = await _engine(plan_store, plan_settings, executor).run("plan-1")

        assert plan.status == PlanStatus.COMPLETED
        workers = [r.session_key for r in executor.requests_for("planner-worker:")]
        assert workers == ["planner-worker:plan-1:t1", "planner-worker:plan-1:t2", "planner-worker:plan-1:t3"]
        t2_prompt = executor.requests_for("planner-worker:plan-1:t2")[0].prompt
        assert "### t1: Do t1\nCreated the schema" in t2_prompt

    @pytest.mark.asyncio
    async def test_low_final_score_still_completes(self, plan_store, plan_settings):
        _save_plan(plan_store)
        executor = ScriptedExecutor({
            "planner:": tasks_payload(("t1",)),
            "planner-eval:": {"score": 60, "assessment": "Missing delete endpoint"},
        })

        plan = await _engine(plan_store, plan_settings, executor).run("plan-1")

        assert plan.status == PlanStatus.COMPLETED
        assert plan.stop_reason == "Plan finished with score 60/100: Missing delete endpoint"


class TestFailures:
    @pytest.mark.asyncio
    async def test_retry_then_success(self, plan_store, plan_settings):
        _save_plan(plan_store, budget=PlanBudget(max_retries=2, replan_threshold=1.0))
        executor = ScriptedExecutor({
            "planner:": tasks_payload(("t1",)),
            "planner-worker:plan-1:t1": [error("flaky"), ok("fixed")],
            "planner-eval:": FINAL_OK,
        })
        engine = _engine(plan_store, plan_settings, executor)

        plan = await engine.run("plan-1")

        assert plan.status == PlanStatus.COMPLETED
        assert plan.get_task("t1").retries == 1
        assert [r.attempt for r in engine.logs_for("plan-1").worker_runs.read()] == [1, 2]
        reasons = [r.reason for r in engine.logs_for("plan-1").tasks.read() if r.task_id == "t1"]
        assert "retry 1/2: flaky" in reasons

    @pytest.mark.asyncio
    async def test_exhausted_retries_skip_dependants(self, plan_store, plan_settings, tmp_path):
        _save_plan(plan_store, budget=PlanBudget(max_retries=1, replan_threshold=1.0))
        executor = ScriptedExecutor({
            "planner:": tasks_payload(("t1",), ("t2", ["t1"]), ("t3",)),
            "planner-worker:plan-1:t1": error("no database"),
            "planner-eval:": {"score": 40, "assessment": "Partial"},
        })
        events_path = tmp_path / "events.jsonl"
        engine = _engine(plan_store, plan_settings, executor, events_path)

        plan = await engine.run("plan-1")

        assert plan.status == PlanStatus.COMPLETED
        assert _statuses(plan) == {"t1": "failed", "t2": "skipped", "t3": "completed"}
        assert executor.requests_for("planner-worker:plan-1:t2") == []
        skipped = [r for r in engine.logs_for("plan-1").tasks.read() if r.to_status == "skipped"]
        assert skipped[0].reason == "dependency t1 failed"
        assert "plan.task.failed" in [e.type for e in JsonlEventSink(events_path).read()]

    @pytest.mark.asyncio
    async def test_heavy_failure_triggers_replan(self, plan_store, plan_settings):
        _save_plan(plan_store, budget=PlanBudget(max_concurrency=4, max_retries=2))
        completed_before = {}

        def _replan(request):
            current = plan_store.require("plan-1")
            completed_before.update(
                {t.id: t.model_dump() for t in current.tasks if t.status == PlanTaskStatus.COMPLETED}
            )
            return tasks_payload(("t1",), ("t5", ["t1"]), ("t6",))

        executor = ScriptedExecutor({
            "planner:": [tasks_payload(("t1",), ("t2",), ("t3",), ("t4",)), _replan],
            "planner-worker:plan-1:t1": "Project initialised",
            "planner-worker:plan-1:t2": error("approach A failed"),
            "planner-worker:plan-1:t3": error("approach A failed"),
            "planner-worker:plan-1:t4": error("approach A failed"),
            "planner-eval:": FINAL_OK,
        })
        engine = _engine(plan_store, plan_settings, executor)

        plan = await engine.run("plan-1")

        assert plan.status == PlanStatus.COMPLETED
        assert plan.plan_revision == 1
        assert [t.id for t in plan.tasks] == ["t1", "t5", "t6"]
        assert plan.get_task("t1").result.output_text == "Project initialised"
        assert list(completed_before) == ["t1"]
        assert {tid: plan.get_task(tid).model_dump() for tid in completed_before} == completed_before
        assert len(executor.requests_for("planner-worker:plan-1:t1")) == 1
        replan_prompt = executor.requests_for("planner:")[1].prompt
        assert "replanning a project" in replan_prompt
        assert "[t1] Do t1: Project initialised" in replan_prompt

        logs = engine.logs_for("plan-1")
        removed = sorted(r.task_id for r in logs.tasks.read() if r.to_status == "removed")
        assert removed == ["t2", "t3", "t4"]
        assert [r.phase for r in logs.evaluations.read()] == ["planning", "replanning", "final"]

    @pytest.mark.asyncio
    async def test_invalid_graph_is_retried(self, plan_store, plan_settings):
        _save_plan(plan_store)
        executor = ScriptedExecutor({
            "planner:": [tasks_payload(("a", ["b"]), ("b", ["a"])), tasks_payload(("a",), ("b", ["a"]))],
            "planner-eval:": FINAL_OK,
        })

        plan = await _engine(plan_store, plan_settings, executor).run("plan-1")

        assert plan.status == PlanStatus.COMPLETED
        assert len(executor.requests_for("planner:")) == 2

    @pytest.mark.asyncio
    async def test_cyclic_graph_twice_fails_plan_with_problems(self, plan_store, plan_settings):
        _save_plan(plan_store)
        executor = ScriptedExecutor({"planner:": tasks_payload(("a", ["b"]), ("b", ["a"]))})

        plan = await _engine(plan_store, plan_settings, executor).run("plan-1")

        assert plan.status == PlanStatus.FAILED
        assert plan.stop_reason.endswith("Cycle detected in task dependencies")
        assert plan.tasks == []

    @pytest.mark.asyncio
    async def test_decomposition_failure_fails_plan(self, plan_store, plan_settings, tmp_path):
        _save_plan(plan_store)
        executor = ScriptedExecutor({"planner:": "Sorry, I cannot plan this."})
        events_path = tmp_path / "events.jsonl"

        plan = await _engine(plan_store, plan_settings, executor, events_path).run("plan-1")

        assert plan.status == PlanStatus.FAILED
        assert plan.stop_reason.startswith("Planner failed to produce a valid task DAG after 2 attempts")
        assert plan.usage.agent_turns == 2
        assert [e.type for e in JsonlEventSink(events_path).read()][-1] == "plan.failed"

    @pytest.mark.asyncio
    async def test_turn_budget_fails_plan(self, plan_store, plan_settings):
        _save_plan(plan_store, budget=PlanBudget(max_agent_turns=3, max_concurrency=1))
        executor = ScriptedExecutor({"planner:": tasks_payload(("t1",), ("t2",), ("t3",))})

        plan = await _engine(plan_store, plan_settings, executor).run("plan-1")

        assert plan.status == PlanStatus.FAILED
        assert plan.stop_reason == "Agent turn budget exceeded (3/3)"
        assert _statuses(plan) == {"t1": "completed", "t2": "completed", "t3": "ready"}


class TestInterruption:
    @pytest.mark.asyncio
    async def test_external_stop_discards_batch(self, plan_store, plan_settings):
        _save_plan(plan_store)

        def _stop_plan(request):
            plan_store.update("plan-1", lambda p: p.transition_to(PlanStatus.STOPPED, "Stopped by user"))
            return "done"

        executor = ScriptedExecutor({
            "planner:": tasks_payload(("t1",), ("t2",)),
            "planner-worker:": _stop_plan,
        })

        plan = await _engine(plan_store, plan_settings, executor).run("plan-1")

        assert plan.status == PlanStatus.STOPPED
        assert plan.usage.agent_turns == 1
        assert all(t.result is None for t in plan.tasks)

    @pytest.mark.asyncio
    async def test_resume_resets_interrupted_tasks(self, plan_store, plan_settings):
        _save_plan(plan_store, status=PlanStatus.EXECUTING, tasks=[
            PlanTask(id="t1", title="Init", status=PlanTaskStatus.COMPLETED,
                     result=TaskResult(status="ok", summary="ok")),
            PlanTask(id="t2", title="API", depends_on=["t1"], status=PlanTaskStatus.RUNNING),
        ])
        executor = ScriptedExecutor({"planner-eval:": FINAL_OK})
        engine = _engine(plan_store, plan_settings, executor)

        plan = await engine.run("plan-1")

        assert plan.status == PlanStatus.COMPLETED
        assert executor.requests_for("planner:") == []
        assert [r.session_key for r in executor.requests_for("planner-worker:")] == ["planner-worker:plan-1:t2"]
        interrupted = [r for r in engine.logs_for("plan-1").tasks.read() if r.reason == "interrupted"]
        assert [r.task_id for r in interrupted] == ["t2"]

    @pytest.mark.asyncio
    async def test_completed_plan_is_untouched(self, plan_store, plan_settings):
        _save_plan(plan_store, status=PlanStatus.COMPLETED)
        executor = ScriptedExecutor()

        plan = await _engine(plan_store, plan_settings, executor).run("plan-1")

        assert plan.status == PlanStatus.COMPLETED
        assert executor.requests == []
