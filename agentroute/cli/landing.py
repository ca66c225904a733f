"""Landing commands (land, abandon)."""

import sys
from typing import Optional

import click

from agentroute.agents import find_assignment
from agentroute.cli.common import console, fail, store_for
from agentroute.errors import AgentRouteError, CheckTimeoutError, MergeConflictError
from agentroute.integrator import IntegrationResult, LandOptions, LandOutcome, WorkIntegrator


def _report(result: IntegrationResult) -> None:
    assignment = result.assignment
    if result.outcome == LandOutcome.LANDED:
        note = " (resumed)" if result.resumed else ""
        console.print(f"[green]✓ Landed #{assignment.ticket_number} via PR #{result.pr_number}{note}[/green]")
        if result.branch_deleted:
            console.print(f"[dim]Deleted branch {assignment.branch}[/dim]")
        else:
            console.print(f"[dim]Kept branch {assignment.branch}: {result.branch_kept_reason}[/dim]")
    elif result.outcome == LandOutcome.CHECKS_FAILED:
        console.print(
            f"[red]✗ Checks failed on PR #{result.pr_number} ({assignment.branch}): "
            f"{', '.join(result.failed_checks) or 'unknown'}[/red]"
        )
    elif result.outcome == LandOutcome.AWAITING_REVIEW:
        console.print(
            f"[yellow]PR #{result.pr_number} for #{assignment.ticket_number} is waiting for review "
            f"({result.approvals} approval(s))[/yellow]"
        )


@click.command()
@click.argument("ticket", type=int, required=False)
@click.option("--all", "land_all", is_flag=True, help="Land every ticket marked ready to merge")
@click.option("--no-wait", is_flag=True, help="Check CI once instead of polling")
@click.option("--keep-branch", is_flag=True, help="Never delete the branch after merging")
@click.pass_context
def land(ctx: click.Context, ticket: Optional[int], land_all: bool, no_wait: bool, keep_branch: bool) -> None:
    """Land a completed assignment through a pull request.

    TICKET is the ticket number; use --all to land every ready ticket.
    """
    if (ticket is None) == (not land_all):
        fail("Pass either TICKET or --all")

    config, store = store_for(ctx)
    integrator = WorkIntegrator(store, config)
    opts = LandOptions(wait=not no_wait, delete_branch=False if keep_branch else None)

    try:
        assignments = integrator.find_landable() if land_all else [find_assignment(store, config, ticket)]
    except AgentRouteError as e:
        fail(str(e))

    if not assignments:
        console.print("[dim]Nothing to land[/dim]")
        return

    failures = 0
    for assignment in assignments:
        try:
            result = integrator.land(assignment, opts)
        except CheckTimeoutError as e:
            failures += 1
            console.print(f"[yellow]{e}[/yellow]")
            continue
        except MergeConflictError as e:
            failures += 1
            console.print(f"[red]✗ {e}[/red]")
            console.print(f"[dim]Ticket #{e.ticket_number} moved to {config.board_columns.conflict}; rebase {e.branch}[/dim]")
            continue
        except AgentRouteError as e:
            failures += 1
            console.print(f"[red]✗ #{assignment.ticket_number} ({assignment.branch}): {e}[/red]")
            continue

        _report(result)
        if result.outcome == LandOutcome.CHECKS_FAILED:
            failures += 1

    if failures:
        sys.exit(1)


@click.command()
@click.argument("ticket", type=int)
@click.option("--reason", default="", help="Why the integration is abandoned")
@click.pass_context
def abandon(ctx: click.Context, ticket: int, reason: str) -> None:
    """Close a ticket's pull request without merging (branch is kept)."""
    config, store = store_for(ctx)
    try:
        assignment = find_assignment(store, config, ticket)
        result = WorkIntegrator(store, config).abandon(assignment, reason)
    except AgentRouteError as e:
        fail(str(e))

    if result.pr_number:
        console.print(f"[yellow]Closed PR #{result.pr_number}; kept branch {assignment.branch}[/yellow]")
    else:
        console.print(f"[dim]No open PR for {assignment.branch}[/dim]")
