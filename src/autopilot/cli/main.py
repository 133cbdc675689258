"""Main CLI for the orchestrator."""

import asyncio
import re
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..core.config import load_config
from ..core.goal import HALTED_GOAL_STATUSES, Goal, GoalStatus, NotifyTarget
from ..core.notifications import format_duration
from ..core.plan import HALTED_PLAN_STATUSES, Plan, PlanStatus, PlanTaskStatus
from ..errors import AutopilotError, ConfigError
from ..run_service import build_service, serve
from ..store.execution_log import GoalLogs, PlanLogs
from ..utils.rich_logging import setup_rich_logging
from ..workflow.dag import analyze, topological_order

console = Console()

_DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*(ms|s|m|h)$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}

_STATUS_STYLES = {
    "running": "green",
    "executing": "green",
    "planning": "cyan",
    "replanning": "cyan",
    "evaluating": "cyan",
    "paused": "yellow",
    "pending": "white",
    "completed": "bold green",
    "stopped": "yellow",
    "budget_exceeded": "magenta",
    "failed": "red",
    "ready": "cyan",
    "skipped": "dim",
}


def parse_duration(value: str) -> float:
    """``2h``, ``30m``, ``90s``, ``500ms`` or a bare number of seconds."""
    match = _DURATION_PATTERN.match(value.strip())
    if match:
        return float(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]
    try:
        seconds = float(value)
    except ValueError:
        seconds = 0
    if seconds <= 0:
        raise click.BadParameter(f'Invalid duration "{value}". Use e.g. "2h", "30m", "120s".')
    return seconds


class DurationType(click.ParamType):
    name = "duration"

    def convert(self, value, param, ctx):
        if isinstance(value, (int, float)):
            return float(value)
        return parse_duration(value)


DURATION = DurationType()


def _styled(status: str) -> str:
    style = _STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/]"


def _notify_target(channel: Optional[str], recipient: Optional[str], account_id: Optional[str]) -> Optional[NotifyTarget]:
    if not channel or not recipient:
        return None
    return NotifyTarget(channel=channel, recipient=recipient, account_id=account_id)


def _fail(message: str) -> None:
    console.print(f"[red]Error: {escape(message)}[/]")
    sys.exit(1)


@click.group()
@click.option("--config", "-c", "config_path", default="autopilot.yaml", help="Config file path")
@click.option("--state-dir", help="Override the state directory from config")
@click.pass_context
def cli(ctx, config_path, state_dir):
    """Autopilot - autonomous goal loops and planned task DAGs."""
    ctx.ensure_object(dict)
    try:
        config = load_config(Path(config_path))
    except ConfigError as e:
        _fail(str(e))
    if state_dir:
        config = config.model_copy(update={"state_dir": Path(state_dir)})
    ctx.obj["config"] = config


def _service(ctx):
    return build_service(ctx.obj["config"])


# -- goals ------------------------------------------------------------------


@cli.group()
def goal():
    """Create and control goal loops."""


@goal.command("create")
@click.argument("objective")
@click.option("--criteria", "-k", multiple=True, help="Acceptance criterion (repeatable)")
@click.option("--max-iterations", type=int, help="Iteration budget")
@click.option("--max-tokens", type=int, help="Token budget")
@click.option("--max-time", type=DURATION, help="Time budget (e.g. 4h, 30m)")
@click.option("--eval-every", type=int, help="Evaluate progress every N iterations")
@click.option("--eval-model", help="Model for the evaluator turn")
@click.option("--stall-threshold", type=int, help="Evaluations without progress before stopping")
@click.option("--quality-gate", type=int, multiple=True, help="Pause for approval before iteration N (repeatable)")
@click.option("--agent-id", help="Agent ID to use for iterations")
@click.option("--notify-channel", help="Notification channel")
@click.option("--notify-to", help="Notification recipient")
@click.option("--notify-account-id", help="Notification account ID")
@click.pass_context
def goal_create(ctx, objective, criteria, max_iterations, max_tokens, max_time, eval_every, eval_model,
                stall_threshold, quality_gate, agent_id, notify_channel, notify_to, notify_account_id):
    """Create a goal. A running `autopilot serve` picks it up."""
    try:
        record = _service(ctx).create_goal(
            objective,
            list(criteria),
            max_iterations=max_iterations,
            max_tokens=max_tokens,
            max_time_seconds=max_time,
            eval_every=eval_every,
            eval_model=eval_model,
            stall_threshold=stall_threshold,
            quality_gates=list(quality_gate),
            notify=_notify_target(notify_channel, notify_to, notify_account_id),
            agent_id=agent_id,
        )
    except AutopilotError as e:
        _fail(str(e))
    console.print(f"[green]✓ Created goal {record.id}[/]")
    console.print(
        f"  Budget: {record.budget.max_iterations} iterations, {record.budget.max_tokens} tokens, "
        f"{format_duration(record.budget.max_time_seconds)}"
    )


@goal.command("list")
@click.option("--active", is_flag=True, help="Only show goals that are not halted")
@click.pass_context
def goal_list(ctx, active):
    """List goals."""
    goals = _service(ctx).goal_store.list()
    if active:
        goals = [g for g in goals if GoalStatus(g.status) not in HALTED_GOAL_STATUSES]
    if not goals:
        console.print("[dim]No goals[/]")
        return

    table = Table(title="Goals")
    table.add_column("ID")
    table.add_column("Status")
    table.add_column("Goal")
    table.add_column("Iterations", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Score", justify="right")

    for g in goals:
        score = str(g.evaluation_scores[-1]) if g.evaluation_scores else "-"
        table.add_row(
            g.id,
            _styled(g.status),
            g.goal[:60],
            f"{g.usage.iterations}/{g.budget.max_iterations}",
            str(g.usage.total_tokens),
            score,
        )
    console.print(table)


def _print_goal(record: Goal, logs: GoalLogs) -> None:
    console.print(f"[bold]Goal {record.id}[/] {_styled(record.status)}")
    console.print(f"  {record.goal}")
    for i, criterion in enumerate(record.criteria, 1):
        met = ""
        if record.last_evaluation and i <= len(record.last_evaluation.criteria_status):
            met = " [green]✓[/]" if record.last_evaluation.criteria_status[i - 1].met else " [red]✗[/]"
        console.print(f"  {i}. {criterion}{met}")

    console.print(
        f"\n  Iterations: {record.usage.iterations}/{record.budget.max_iterations}  "
        f"Tokens: {record.usage.total_tokens}/{record.budget.max_tokens}  "
        f"Elapsed: {format_duration(record.usage.elapsed_seconds())}  "
        f"Errors: {record.usage.errors} ({record.usage.consecutive_errors} consecutive)"
    )
    if record.evaluation_scores:
        console.print(f"  Scores: {' → '.join(str(s) for s in record.evaluation_scores)}")
    if record.last_evaluation:
        console.print(f"  Last assessment: {record.last_evaluation.assessment}")
    if record.last_suggested_action:
        console.print(f"  Next action: {record.last_suggested_action}")
    if record.stop_reason:
        console.print(f"  Stop reason: [yellow]{record.stop_reason}[/]")
    if record.status == GoalStatus.PAUSED:
        console.print(f"  [yellow]Waiting for approval: autopilot goal approve {record.id}[/]")

    recent = logs.iterations.read(limit=5)
    if recent:
        table = Table(title="Recent iterations")
        table.add_column("#", justify="right")
        table.add_column("Status")
        table.add_column("Tokens", justify="right")
        table.add_column("Summary")
        for entry in recent:
            table.add_row(
                str(entry.iteration),
                _styled("completed" if entry.status == "ok" else "failed"),
                str(entry.tokens),
                (entry.summary or entry.error or "")[:80],
            )
        console.print(table)


@goal.command("status")
@click.argument("goal_id")
@click.pass_context
def goal_status(ctx, goal_id):
    """Show one goal in detail."""
    service = _service(ctx)
    record = service.goal_store.get(goal_id)
    if record is None:
        _fail(f"Goal {goal_id} not found")
    _print_goal(record, GoalLogs(service.goal_store.log_dir(goal_id)))


@goal.command("stop")
@click.argument("goal_id")
@click.option("--reason", default="Stopped by user", help="Stop reason to record")
@click.pass_context
def goal_stop(ctx, goal_id, reason):
    """Stop a goal. A running loop exits at its next step."""
    try:
        record = _service(ctx).stop_goal(goal_id, reason)
    except AutopilotError as e:
        _fail(str(e))
    console.print(f"[yellow]Goal {record.id} is {record.status}[/]")


@goal.command("resume")
@click.argument("goal_id")
@click.option("--add-iterations", type=int, default=0, help="Add iterations to budget")
@click.option("--add-tokens", type=int, default=0, help="Add tokens to budget")
@click.option("--add-time", type=DURATION, default=0, help="Add time to budget (e.g. 1h, 30m)")
@click.pass_context
def goal_resume(ctx, goal_id, add_iterations, add_tokens, add_time):
    """Resume a stopped or budget-exceeded goal."""
    try:
        record = _service(ctx).resume_goal(goal_id, add_iterations, add_tokens, add_time)
    except AutopilotError as e:
        _fail(str(e))
    console.print(f"[green]✓ Goal {record.id} is {record.status}[/]")


@goal.command("approve")
@click.argument("goal_id")
@click.pass_context
def goal_approve(ctx, goal_id):
    """Approve a goal paused at a quality gate."""
    try:
        ok = _service(ctx).approve_goal(goal_id)
    except AutopilotError as e:
        _fail(str(e))
    if not ok:
        _fail(f"Goal {goal_id} is not waiting for approval")
    console.print(f"[green]✓ Approved goal {goal_id}[/]")


@goal.command("reject")
@click.argument("goal_id")
@click.pass_context
def goal_reject(ctx, goal_id):
    """Reject a goal paused at a quality gate (stops it)."""
    try:
        ok = _service(ctx).reject_goal(goal_id)
    except AutopilotError as e:
        _fail(str(e))
    if not ok:
        _fail(f"Goal {goal_id} is not waiting for approval")
    console.print(f"[yellow]Rejected goal {goal_id}[/]")


# -- plans ------------------------------------------------------------------


@cli.group()
def plan():
    """Create and control planned task DAGs."""


@plan.command("create")
@click.argument("objective")
@click.option("--criteria", "-k", multiple=True, help="Acceptance criterion (repeatable)")
@click.option("--max-turns", type=int, help="Agent turn budget")
@click.option("--max-tokens", type=int, help="Token budget")
@click.option("--max-time", type=DURATION, help="Time budget (e.g. 1h)")
@click.option("--max-concurrency", type=int, help="Workers per batch")
@click.option("--max-retries", type=int, help="Attempts per task before it fails")
@click.option("--replan-threshold", type=float, help="Batch failure rate that triggers replanning (0-1)")
@click.option("--notify-channel", help="Notification channel")
@click.option("--notify-to", help="Notification recipient")
@click.option("--notify-account-id", help="Notification account ID")
@click.pass_context
def plan_create(ctx, objective, criteria, max_turns, max_tokens, max_time, max_concurrency, max_retries,
                replan_threshold, notify_channel, notify_to, notify_account_id):
    """Create a plan. A running `autopilot serve` picks it up."""
    try:
        record = _service(ctx).create_plan(
            objective,
            list(criteria),
            max_agent_turns=max_turns,
            max_tokens=max_tokens,
            max_time_seconds=max_time,
            max_concurrency=max_concurrency,
            max_retries=max_retries,
            replan_threshold=replan_threshold,
            notify=_notify_target(notify_channel, notify_to, notify_account_id),
        )
    except AutopilotError as e:
        _fail(str(e))
    console.print(f"[green]✓ Created plan {record.id}[/]")


@plan.command("list")
@click.option("--active", is_flag=True, help="Only show plans that are not halted")
@click.pass_context
def plan_list(ctx, active):
    """List plans."""
    plans = _service(ctx).plan_store.list()
    if active:
        plans = [p for p in plans if PlanStatus(p.status) not in HALTED_PLAN_STATUSES]
    if not plans:
        console.print("[dim]No plans[/]")
        return

    table = Table(title="Plans")
    table.add_column("ID")
    table.add_column("Status")
    table.add_column("Goal")
    table.add_column("Tasks", justify="right")
    table.add_column("Turns", justify="right")
    table.add_column("Rev", justify="right")
    table.add_column("Score", justify="right")

    for p in plans:
        done = len(p.tasks_with_status(PlanTaskStatus.COMPLETED))
        table.add_row(
            p.id,
            _styled(p.status),
            p.goal[:60],
            f"{done}/{len(p.tasks)}",
            f"{p.usage.agent_turns}/{p.budget.max_agent_turns}",
            str(p.plan_revision),
            str(p.final_evaluation.score) if p.final_evaluation else "-",
        )
    console.print(table)


def _print_plan(record: Plan, logs: PlanLogs) -> None:
    console.print(f"[bold]Plan {record.id}[/] {_styled(record.status)} (revision {record.plan_revision})")
    console.print(f"  {record.goal}")
    for i, criterion in enumerate(record.criteria, 1):
        console.print(f"  {i}. {criterion}")
    console.print(
        f"\n  Turns: {record.usage.agent_turns}/{record.budget.max_agent_turns}  "
        f"Tokens: {record.usage.total_tokens}/{record.budget.max_tokens}  "
        f"Elapsed: {format_duration(record.usage.elapsed_seconds())}  "
        f"Progress: {analyze(record.tasks).progress_line()}"
    )
    if record.stop_reason:
        console.print(f"  Stop reason: [yellow]{record.stop_reason}[/]")
    if record.final_evaluation:
        console.print(
            f"  Final score: {record.final_evaluation.score}/100 - {record.final_evaluation.assessment}"
        )

    if record.tasks:
        table = Table(title="Tasks")
        table.add_column("ID")
        table.add_column("Status")
        table.add_column("Title")
        table.add_column("Deps")
        table.add_column("Retries", justify="right")
        table.add_column("Result")
        by_id = {t.id: t for t in record.tasks}
        for task_id in topological_order(record.tasks):
            task = by_id[task_id]
            result = ""
            if task.result:
                result = (task.result.summary or task.result.error or "")[:60]
            table.add_row(
                task.id,
                _styled(task.status),
                task.title[:50],
                ", ".join(task.depends_on) or "-",
                str(task.retries),
                result,
            )
        console.print(table)

    runs = logs.worker_runs.read(limit=5)
    if runs:
        console.print("[bold]Recent worker runs[/]")
        for run in runs:
            console.print(f"  {run.task_id} attempt {run.attempt}: {run.status} ({run.duration_ms}ms)")


@plan.command("status")
@click.argument("plan_id")
@click.pass_context
def plan_status(ctx, plan_id):
    """Show one plan and its tasks."""
    service = _service(ctx)
    record = service.plan_store.get(plan_id)
    if record is None:
        _fail(f"Plan {plan_id} not found")
    _print_plan(record, PlanLogs(service.plan_store.log_dir(plan_id)))


@plan.command("stop")
@click.argument("plan_id")
@click.option("--reason", default="Stopped by user", help="Stop reason to record")
@click.pass_context
def plan_stop(ctx, plan_id, reason):
    """Stop a plan. A running loop exits at its next step."""
    try:
        record = _service(ctx).stop_plan(plan_id, reason)
    except AutopilotError as e:
        _fail(str(e))
    console.print(f"[yellow]Plan {record.id} is {record.status}[/]")


@plan.command("resume")
@click.argument("plan_id")
@click.option("--add-turns", type=int, default=0, help="Add agent turns to budget")
@click.option("--add-tokens", type=int, default=0, help="Add tokens to budget")
@click.option("--add-time", type=DURATION, default=0, help="Add time to budget")
@click.pass_context
def plan_resume(ctx, plan_id, add_turns, add_tokens, add_time):
    """Resume a stopped or failed plan."""
    try:
        record = _service(ctx).resume_plan(plan_id, add_turns, add_tokens, add_time)
    except AutopilotError as e:
        _fail(str(e))
    console.print(f"[green]✓ Plan {record.id} is {record.status}[/]")


# -- service ----------------------------------------------------------------


@cli.command("serve")
@click.pass_context
def serve_command(ctx):
    """Run the orchestrator service in the foreground."""
    config = ctx.obj["config"]
    setup_rich_logging(
        component_id="service",
        state_dir=config.state_dir,
        log_level=config.log_level,
        use_file=True,
        use_json=False,
    )
    console.print(f"[bold green]Serving from {config.state_dir}[/] (Ctrl+C to stop)")
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/]")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
