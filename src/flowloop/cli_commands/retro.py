"""CLI commands for the learning loop: retro, feedback, proposals."""

from __future__ import annotations

import click

from flowloop.cli_common import echo_json, fail, get_db
from flowloop.feedback import FeedbackPromoter
from flowloop.metrics import MetricsAggregator
from flowloop.proposals import ProposalBoard
from flowloop.types.analytics import RetroRecord


def _echo_retro(retro: RetroRecord) -> None:
    click.echo(f"Retrospective {retro['period_id']}")
    sections = (
        ("What worked", "what_worked"),
        ("What didn't", "what_didnt"),
        ("Patterns", "patterns_detected"),
        ("Proposed actions", "actions_proposed"),
        ("Accepted actions", "actions_accepted"),
    )
    for title, key in sections:
        items = retro[key]  # type: ignore[literal-required]
        if not items:
            continue
        click.echo(f"\n  {title}:")
        for item in items:
            click.echo(f"    - {item}")


# ---------------------------------------------------------------------------
# retro
# ---------------------------------------------------------------------------


@click.group()
def retro() -> None:
    """Record and process period retrospectives."""


@retro.command("save")
@click.argument("period_id")
@click.option("--worked", multiple=True, help="What worked (repeatable)")
@click.option("--didnt", multiple=True, help="What didn't work (repeatable)")
@click.option("--pattern", multiple=True, help="Pattern observed (repeatable)")
@click.option("--proposed", multiple=True, help="Proposed action (repeatable)")
@click.option("--accepted", multiple=True, help="Accepted action (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def retro_save(
    period_id: str,
    worked: tuple[str, ...],
    didnt: tuple[str, ...],
    pattern: tuple[str, ...],
    proposed: tuple[str, ...],
    accepted: tuple[str, ...],
    as_json: bool,
) -> None:
    """Create or replace the retrospective for PERIOD_ID."""
    with get_db() as db:
        saved = db.save_retro(
            period_id,
            what_worked=list(worked),
            what_didnt=list(didnt),
            patterns_detected=list(pattern),
            actions_proposed=list(proposed),
            actions_accepted=list(accepted),
        )
    if as_json:
        echo_json(saved)
        return
    click.echo(f"Saved retrospective for {period_id}")


@retro.command("show")
@click.argument("period_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def retro_show(period_id: str, as_json: bool) -> None:
    """Show the retrospective for PERIOD_ID."""
    with get_db() as db:
        found = db.get_retro(period_id)
    if found is None:
        fail(f"No retrospective for period {period_id}")
    if as_json:
        echo_json(found)
        return
    _echo_retro(found)


@retro.command("accept")
@click.argument("period_id")
@click.argument("actions", nargs=-1, required=True)
def retro_accept(period_id: str, actions: tuple[str, ...]) -> None:
    """Accept one or more ACTIONS in PERIOD_ID's retrospective."""
    with get_db() as db:
        try:
            updated = db.accept_retro_actions(period_id, list(actions))
        except KeyError:
            fail(f"No retrospective for period {period_id}")
    click.echo(f"{period_id}: {len(updated['actions_accepted'])} accepted action(s)")


@retro.command("process")
@click.argument("period_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def retro_process(period_id: str, as_json: bool) -> None:
    """Turn PERIOD_ID's retrospective into feedback rules and workflow proposals."""
    with get_db() as db:
        found = db.get_retro(period_id)
        if found is None:
            fail(f"No retrospective for period {period_id}")
        counts = FeedbackPromoter(db).process_retrospective(found)
        votes = ProposalBoard(db).propose_from_retro(found, project=db.project)

    if as_json:
        echo_json(
            {
                **counts,
                "proposals": [
                    {"id": v.proposal_id, "is_new": v.is_new, "votes": v.votes, "promoted": v.promoted} for v in votes
                ],
            }
        )
        return
    click.echo(f"Feedback rules: {counts['new_rules']} new, {counts['updated_rules']} updated")
    for v in votes:
        state = "promoted" if v.promoted else ("new" if v.is_new else "voted")
        click.echo(f"  Proposal #{v.proposal_id}: {state} ({v.votes} vote(s))")


@retro.command("data")
@click.argument("period_id")
def retro_data(period_id: str) -> None:
    """Print raw numbers for PERIOD_ID's retrospective as JSON."""
    with get_db() as db:
        data = MetricsAggregator(db).generate_retro_data(period_id)
    if data is None:
        fail(f"Error: could not read data for period {period_id}")
    echo_json(data)


# ---------------------------------------------------------------------------
# feedback
# ---------------------------------------------------------------------------


@click.group()
def feedback() -> None:
    """Inspect feedback rules promoted from retrospectives."""


@feedback.command("rules")
@click.option("--target", default=None, help="Only rules for this target")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def feedback_rules(target: str | None, as_json: bool) -> None:
    """List feedback rules, active and pending."""
    with get_db() as db:
        if as_json:
            echo_json(db.list_feedback_rules(target=target))
            return
        if target:
            rules = db.list_feedback_rules(target=target)
            if not rules:
                click.echo(f"No feedback rules for {target}.")
            for r in rules:
                state = "active" if r["active"] else "pending"
                click.echo(f"  [{r['occurrences']}x {state}] {r['instruction']}")
            return
        click.echo(FeedbackPromoter(db).format_rules())


@feedback.command("context")
@click.argument("target")
def feedback_context(target: str) -> None:
    """Print the lessons block to prepend to TARGET's instructions."""
    with get_db() as db:
        block = FeedbackPromoter(db).build_context_block(target)
    if block:
        click.echo(block)


# ---------------------------------------------------------------------------
# proposals
# ---------------------------------------------------------------------------


@click.group()
def proposals() -> None:
    """Cross-project workflow proposals."""


@proposals.command("list")
@click.option(
    "--status",
    default=None,
    type=click.Choice(["pending", "promoted", "rejected"]),
    help="Filter by status",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def proposals_list(status: str | None, as_json: bool) -> None:
    """List proposals."""
    with get_db() as db:
        board = ProposalBoard(db)
        rows = db.list_proposals(status=status)
        if as_json:
            echo_json(rows)
            return
        click.echo(board.format_proposals(rows))


@proposals.command("vote")
@click.argument("proposal_id", type=int)
@click.option("--project", default=None, help="Voting project (default: this project)")
def proposals_vote(proposal_id: int, project: str | None) -> None:
    """Vote for a pending proposal."""
    with get_db() as db:
        try:
            result = ProposalBoard(db).vote(proposal_id, project=project or db.project)
        except KeyError:
            fail(f"Not found: proposal {proposal_id}")
        except ValueError as e:
            fail(f"Error: {e}")
    suffix = " - promoted" if result.promoted else ""
    click.echo(f"Proposal #{result.proposal_id}: {result.votes} vote(s){suffix}")


@proposals.command("reject")
@click.argument("proposal_id", type=int)
def proposals_reject(proposal_id: int) -> None:
    """Reject a proposal."""
    with get_db() as db:
        try:
            ProposalBoard(db).reject(proposal_id)
        except KeyError:
            fail(f"Not found: proposal {proposal_id}")
    click.echo(f"Proposal #{proposal_id} rejected")


def register(cli: click.Group) -> None:
    """Register learning-loop commands with the CLI group."""
    cli.add_command(retro)
    cli.add_command(feedback)
    cli.add_command(proposals)
