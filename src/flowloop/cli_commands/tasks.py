"""CLI commands for tasks and step tracking: task, step, checkpoint, record."""

from __future__ import annotations

import json as json_mod
import sys

import click

from flowloop.cli_common import echo_json, fail, get_db, get_store
from flowloop.core import VALID_CHECKPOINT_RESULTS, VALID_TASK_STATUSES
from flowloop.tracker import TransitionTracker


@click.group()
def task() -> None:
    """Create, list and update tasks."""


@task.command("create")
@click.argument("title")
@click.option("--priority", "-p", default=3, type=int, help="Priority 1-5 (1=highest, default 3)")
@click.option("--period", "period_id", default=None, help="Period (sprint) the task is planned in")
@click.option("--assignee", default="", help="Assignee")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def task_create(title: str, priority: int, period_id: str | None, assignee: str, as_json: bool) -> None:
    """Create a new task in the backlog."""
    with get_db() as db:
        try:
            new_task = db.create_task(title, priority=priority, period_id=period_id, assignee=assignee)
        except ValueError as e:
            if as_json:
                click.echo(json_mod.dumps({"error": str(e)}))
            else:
                click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        if as_json:
            echo_json(new_task.to_dict())
            return
        click.echo(f"Created {new_task.id}: {new_task.title}")


@task.command("list")
@click.option("--period", "period_id", default=None, help="Filter by period")
@click.option("--status", default=None, type=click.Choice(sorted(VALID_TASK_STATUSES)), help="Filter by status")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def task_list(period_id: str | None, status: str | None, as_json: bool) -> None:
    """List tasks."""
    with get_db() as db:
        rows = db.list_tasks(period_id=period_id, status=status)
    if as_json:
        echo_json([t.to_dict() for t in rows])
        return
    if not rows:
        click.echo("No tasks.")
        return
    for t in rows:
        period = f" [{t.period_id}]" if t.period_id else ""
        click.echo(f"  {t.id}  P{t.priority} {t.status:<12} {t.title}{period}")


@task.command("status")
@click.argument("task_id")
@click.argument("status", type=click.Choice(sorted(VALID_TASK_STATUSES)))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def task_status(task_id: str, status: str, as_json: bool) -> None:
    """Set a task's status. Moving to done stamps the completion time."""
    with get_db() as db:
        try:
            updated = db.update_task(task_id, status=status)
        except KeyError:
            fail(f"Not found: {task_id}")
        except ValueError as e:
            fail(f"Error: {e}")
    if as_json:
        echo_json(updated.to_dict())
        return
    click.echo(f"{updated.id}: {updated.status}")


@click.command()
@click.argument("task_id")
@click.argument("to_step")
@click.option("--rework", is_flag=True, help="Mark this move as rework")
@click.option(
    "--result",
    "checkpoint_result",
    default=None,
    type=click.Choice(sorted(VALID_CHECKPOINT_RESULTS)),
    help="Checkpoint outcome for the step being left",
)
@click.option("--notes", default="", help="Free-text notes")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def step(task_id: str, to_step: str, rework: bool, checkpoint_result: str | None, notes: str, as_json: bool) -> None:
    """Move TASK_ID to TO_STEP and log the transition."""
    with get_db() as db:
        try:
            current = db.get_task(task_id)
        except KeyError:
            fail(f"Not found: {task_id}")
        store = get_store(db)
        if store.get_step(to_step) is None:
            fail(f"Unknown step: {to_step}. Valid: {', '.join(store.get_step_ids())}")

        tracker = TransitionTracker.resume(db, store, task_id, period_id=current.period_id)
        step_from = tracker.current_step
        if not store.can_transition(step_from, to_step):
            click.echo(f"Warning: {step_from} -> {to_step} is not a declared transition", err=True)
        persisted = tracker.transition(to_step, had_rework=rework, checkpoint_result=checkpoint_result, notes=notes)
        if not persisted:
            fail(f"Error: transition {step_from} -> {to_step} could not be logged")

    if as_json:
        echo_json({"task_id": task_id, "from": step_from, "to": to_step, "had_rework": rework})
        return
    click.echo(f"{task_id}: {step_from} -> {to_step}{' (rework)' if rework else ''}")


@click.command()
@click.argument("task_id")
@click.argument("result", type=click.Choice(sorted(VALID_CHECKPOINT_RESULTS)))
@click.option("--notes", default="", help="Free-text notes")
def checkpoint(task_id: str, result: str, notes: str) -> None:
    """Record a checkpoint RESULT on the task's current step."""
    with get_db() as db:
        try:
            current = db.get_task(task_id)
        except KeyError:
            fail(f"Not found: {task_id}")
        tracker = TransitionTracker.resume(db, get_store(db), task_id, period_id=current.period_id)
        before = db.count_transitions(period_id=current.period_id)
        tracker.log_checkpoint(result, notes)
        if db.count_transitions(period_id=current.period_id) == before:
            fail(f"Error: checkpoint on {tracker.current_step} could not be logged")
    click.echo(f"{task_id}: checkpoint on {tracker.current_step} -> {result}")


@click.group()
def record() -> None:
    """Record review scores and worker runs."""


@record.command("score")
@click.argument("score", type=float)
@click.option("--task", "task_id", default=None, help="Task the review belongs to")
@click.option("--reviewer", default="", help="Reviewer name")
def record_score(score: float, task_id: str | None, reviewer: str) -> None:
    """Record a 0-100 review score."""
    with get_db() as db:
        try:
            db.record_quality_score(score, task_id=task_id, reviewer=reviewer)
        except ValueError as e:
            fail(f"Error: {e}")
    click.echo(f"Recorded score {score:g}")


@record.command("run")
@click.argument("agent")
@click.option("--failed", is_flag=True, help="The run failed")
@click.option("--task", "task_id", default=None, help="Task the run worked on")
@click.option("--error", default="", help="Error message for a failed run")
def record_run(agent: str, failed: bool, task_id: str | None, error: str) -> None:
    """Record a worker run for AGENT."""
    with get_db() as db:
        try:
            db.record_worker_run(agent, success=not failed, task_id=task_id, error=error)
        except ValueError as e:
            fail(f"Error: {e}")
    click.echo(f"Recorded {'failed' if failed else 'successful'} run for {agent}")


def register(cli: click.Group) -> None:
    """Register task and tracking commands with the CLI group."""
    cli.add_command(task)
    cli.add_command(step)
    cli.add_command(checkpoint)
    cli.add_command(record)
