"""CLI commands for the process definition: show, transitions, apply, reload, audit."""

from __future__ import annotations

import click

from flowloop.cli_common import echo_json, fail, get_db, get_store


@click.group()
def workflow() -> None:
    """Inspect and edit the process definition."""


@workflow.command("show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def workflow_show(as_json: bool) -> None:
    """Show steps, checkpoint policies and transitions."""
    with get_db() as db:
        store = get_store(db)
        config = store.load()
    if as_json:
        echo_json(config.to_dict())
        return
    source = "built-in default" if store.used_fallback else str(store.path)
    click.echo(f"Workflow v{config.version} ({source})")
    click.echo("\nSteps:")
    for s in config.steps:
        cp = s.checkpoint
        state = cp.mode if cp.enabled else "disabled"
        skip = f", skip if priority <= {s.skip_if_priority_lte}" if s.skip_if_priority_lte is not None else ""
        click.echo(f"  {s.id:<15} {s.label} [checkpoint: {state}{skip}]")
    click.echo("\nTransitions:")
    for t in config.transitions:
        cond = f" (when {t.condition})" if t.condition else ""
        click.echo(f"  {t.from_step} -> {t.to_step}{cond}")


@workflow.command("transitions")
@click.argument("from_step")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def workflow_transitions(from_step: str, as_json: bool) -> None:
    """Show valid next steps from FROM_STEP."""
    with get_db() as db:
        store = get_store(db)
        if store.get_step(from_step) is None:
            fail(f"Unknown step: {from_step}. Valid: {', '.join(store.get_step_ids())}")
        transitions = store.get_valid_transitions(from_step)
    if as_json:
        echo_json([{"from": t.from_step, "to": t.to_step, "condition": t.condition} for t in transitions])
        return
    if not transitions:
        click.echo(f"{from_step} is terminal: no outgoing transitions")
        return
    for t in transitions:
        cond = f" (when {t.condition})" if t.condition else ""
        click.echo(f"  -> {t.to_step}{cond}")


@workflow.command("apply")
@click.argument("step_id")
@click.argument("change")
@click.option("--reason", default="", help="Why the change is made (stored in the audit trail)")
@click.pass_context
def workflow_apply(ctx: click.Context, step_id: str, change: str, reason: str) -> None:
    """Apply CHANGE (e.g. 'checkpoint.mode: light') to STEP_ID."""
    with get_db() as db:
        result = get_store(db).apply_suggestion(step_id, change, author=ctx.obj["actor"], reason=reason)
    if not result.applied:
        fail(f"Not applied: {step_id} {change!r} (unknown step, bad change, or no-op)")
    click.echo(f"Applied {result.description}")


@workflow.command("reload")
def workflow_reload() -> None:
    """Re-read workflow.json and validate it."""
    with get_db() as db:
        store = get_store(db)
        config = store.reload()
    if store.used_fallback:
        click.echo(f"Warning: {store.path} missing or invalid, using the built-in default", err=True)
    click.echo(f"Workflow v{config.version} loaded: {len(config.steps)} steps, {len(config.transitions)} transitions")


@workflow.command("audit")
@click.option("--limit", default=20, type=int, help="Max entries (default 20)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def workflow_audit(limit: int, as_json: bool) -> None:
    """Show the history of applied workflow changes."""
    with get_db() as db:
        records = db.get_workflow_audit(limit)
    if as_json:
        echo_json(records)
        return
    if not records:
        click.echo("No workflow changes recorded.")
        return
    for r in records:
        author = r["author"] or "unknown"
        click.echo(f"  {r['created_at'][:19]}  v{r['config_version']}  {r['action']} by {author}")
        for change in r["changes"]:
            click.echo(f"      {change}")
        if r["reason"]:
            click.echo(f"      Reason: {r['reason']}")


def register(cli: click.Group) -> None:
    """Register workflow commands with the CLI group."""
    cli.add_command(workflow)
