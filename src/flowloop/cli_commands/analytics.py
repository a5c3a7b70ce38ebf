"""CLI commands for analytics: metrics, analyze, alerts."""

from __future__ import annotations

import click

from flowloop.alerts import AlertEngine, AlertThresholds, format_alerts
from flowloop.cli_common import echo_json, fail, get_db, get_store
from flowloop.core import alert_settings, read_config
from flowloop.metrics import MetricsAggregator, completion_rate
from flowloop.patterns import PatternDetector, format_analysis


@click.group()
def metrics() -> None:
    """Collect and show per-period metrics."""


@metrics.command("collect")
@click.argument("period_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def metrics_collect(period_id: str, as_json: bool) -> None:
    """Recompute the metrics row for PERIOD_ID."""
    with get_db() as db:
        aggregator = MetricsAggregator(db)
        if not aggregator.collect_period_metrics(period_id):
            fail(f"Error: failed to collect metrics for {period_id}")
        row = aggregator.get_period_metrics(period_id)
    if as_json:
        echo_json(row)
        return
    click.echo(f"Collected metrics for {period_id}")


@metrics.command("show")
@click.argument("period_id", required=False)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def metrics_show(period_id: str | None, as_json: bool) -> None:
    """Show metrics for PERIOD_ID, or every period newest-first."""
    with get_db() as db:
        aggregator = MetricsAggregator(db)
        if period_id:
            row = aggregator.get_period_metrics(period_id)
            if row is None:
                fail(f"No metrics for period {period_id}. Run 'flowloop metrics collect {period_id}'.")
            rows = [row]
        else:
            rows = aggregator.get_all_period_metrics()

    if as_json:
        echo_json(rows[0] if period_id else rows)
        return
    if not rows:
        click.echo("No period metrics collected yet.")
        return
    for m in rows:
        avg = f"{m['avg_delivery_hours']}h" if m["avg_delivery_hours"] is not None else "n/a"
        fpr = f"{m['first_pass_rate']}%" if m["first_pass_rate"] is not None else "n/a"
        click.echo(f"{m['period_id']}")
        click.echo(f"  Completed:      {m['tasks_completed']}/{m['tasks_planned']} ({round(completion_rate(m) * 100)}%)")
        click.echo(f"  Avg delivery:   {avg}")
        click.echo(f"  First pass:     {fpr}")
        click.echo(f"  Rework events:  {m['rework_count']}")


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--apply", "apply_changes", is_flag=True, help="Apply machine-applicable suggestions to workflow.json")
@click.pass_context
def analyze(ctx: click.Context, as_json: bool, apply_changes: bool) -> None:
    """Mine the full history for patterns and suggest workflow edits."""
    with get_db() as db:
        store = get_store(db)
        result = PatternDetector(db, store).analyze()
        applied: list[str] = []
        if apply_changes:
            applied = store.apply_suggestions(
                result.suggestions,
                author=ctx.obj["actor"],
                reason="pattern analysis",
            )

    if as_json:
        data = result.to_dict()
        if apply_changes:
            data["applied"] = applied
        echo_json(data)
        return
    click.echo(format_analysis(result))
    if apply_changes:
        if applied:
            click.echo("\nApplied:")
            for change in applied:
                click.echo(f"  {change}")
        else:
            click.echo("\nNo applicable changes.")


@click.command()
@click.option("--period", "period_id", default=None, help="Also run the rework and pace checks for this period")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def alerts(period_id: str | None, as_json: bool) -> None:
    """Run threshold alerts over the current state."""
    with get_db() as db:
        thresholds = AlertThresholds.from_settings(alert_settings(read_config(db.db_path.parent)))
        found = AlertEngine(db, thresholds).run_all_checks(period_id)
    if as_json:
        echo_json([a.to_dict() for a in found])
        return
    click.echo(format_alerts(found))


def register(cli: click.Group) -> None:
    """Register analytics commands with the CLI group."""
    cli.add_command(metrics)
    cli.add_command(analyze)
    cli.add_command(alerts)
