"""Routing commands (route, pop, status)."""

from typing import Optional

import click
from rich.table import Table

from agentroute.agents import AgentStage, load_agent_views
from agentroute.cli.common import console, fail, store_for
from agentroute.errors import AgentRouteError, RoutingAborted
from agentroute.router import Router, SkippedTicket, routing_lock

_STAGE_STYLES = {
    AgentStage.AVAILABLE: "green",
    AgentStage.ASSIGNED: "cyan",
    AgentStage.IN_PROGRESS: "blue",
    AgentStage.REVIEW: "magenta",
    AgentStage.BLOCKED: "red",
    AgentStage.CLEANUP: "yellow",
}


def _print_skipped(skipped: list[SkippedTicket]) -> None:
    if not skipped:
        return
    table = Table(title="Skipped")
    table.add_column("Ticket", style="bold")
    table.add_column("Reason")
    table.add_column("Detail", style="dim")
    for item in skipped:
        table.add_row(f"#{item.ticket_number}", item.reason, item.detail)
    console.print(table)


@click.command()
@click.option("--dry-run", is_flag=True, help="Show the plan without assigning anything")
@click.pass_context
def route(ctx: click.Context, dry_run: bool) -> None:
    """Assign ready tickets to available agents."""
    config, store = store_for(ctx)
    router = Router(store, config)

    try:
        with routing_lock(config):
            views = load_agent_views(store, config)
            pool = [v for v in views if v.is_available]
            if not pool:
                console.print("[yellow]No agents available[/yellow]")
                return

            if dry_run:
                planned, skipped = router.plan(pool, store.get_open_tickets())
                table = Table(title="Routing plan (dry run)")
                table.add_column("Ticket", style="bold")
                table.add_column("Priority")
                table.add_column("Agent")
                for item in planned:
                    table.add_row(
                        f"#{item.ticket.number} {item.ticket.title}",
                        item.ticket.priority(config.priority_labels).name.lower(),
                        config.agent_label(item.agent_id),
                    )
                console.print(table)
                _print_skipped(skipped)
                return

            result = router.route_tickets(pool)
    except RoutingAborted as e:
        for assignment in e.committed:
            console.print(f"[green]✓ Assigned {assignment}[/green]")
        fail(f"{e} ({len(e.committed)} assignment(s) committed before the failure)")
    except AgentRouteError as e:
        fail(str(e))

    if not result.decisions:
        console.print("[dim]No tickets routed[/dim]")
    for decision in result.decisions:
        console.print(f"[green]✓ {decision}[/green]")
    _print_skipped(result.skipped)


@click.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show every agent's derived stage and assignments."""
    config, store = store_for(ctx)
    try:
        views = load_agent_views(store, config)
    except AgentRouteError as e:
        fail(str(e))

    table = Table(title="Agents")
    table.add_column("Agent", style="bold")
    table.add_column("Stage")
    table.add_column("Load")
    table.add_column("Assignments")
    for view in views:
        style = _STAGE_STYLES.get(view.stage, "white")
        assignments = "\n".join(
            f"#{a.ticket_number} {a.branch} [dim]({view.stages[a.ticket_number].value})[/dim]"
            for a in view.assignments
        )
        table.add_row(
            view.label,
            f"[{style}]{view.stage.value}[/{style}]",
            f"{view.load}/{view.capacity}",
            assignments or "[dim]-[/dim]",
        )
    console.print(table)


@click.command()
@click.option("--agent", "agent_id", help="Agent to claim for (default: least-loaded available agent)")
@click.pass_context
def pop(ctx: click.Context, agent_id: Optional[str]) -> None:
    """Claim the next routable ticket for one agent."""
    config, store = store_for(ctx)
    if agent_id is not None and agent_id not in set(config.agent_ids()):
        fail(f"Unknown agent {agent_id!r} (configured: 1..{config.max_agents})")

    try:
        with routing_lock(config):
            views = load_agent_views(store, config)
            if agent_id is not None:
                view = next(v for v in views if v.agent_id == agent_id)
                if not view.is_available:
                    console.print(f"[yellow]Agent {agent_id} is {view.stage.value}[/yellow]")
                    for a in view.assignments:
                        console.print(f"  #{a.ticket_number} {a.ticket_title} on {a.branch}")
                    return
                pool = [view]
            else:
                pool = [v for v in views if v.is_available]
                if not pool:
                    console.print("[yellow]No agents available[/yellow]")
                    return

            result = Router(store, config).route_tickets(pool, limit=1)
            ticket = store.get_ticket(result.assignments[0].ticket_number) if result.assignments else None
    except AgentRouteError as e:
        fail(str(e))

    if ticket is None:
        console.print("[dim]No routable tickets[/dim]")
        _print_skipped(result.skipped)
        return

    assignment = result.assignments[0]
    console.print(f"[green]✓ Agent {assignment.agent_id} took #{ticket.number}: {ticket.title}[/green]")
    console.print(f"  Branch: {assignment.branch}")
    if ticket.url:
        console.print(f"  [dim]{ticket.url}[/dim]")
