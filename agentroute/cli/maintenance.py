"""Maintenance commands (reconcile, recover, reset, setup-labels, doctor)."""

from typing import Optional

import click
from filelock import Timeout
from rich.table import Table

from agentroute.cli.common import console, fail, state_dir, store_for
from agentroute.coordinator import (
    SNAPSHOT_FILENAME,
    StateCoordinator,
    SyncReport,
    load_snapshots,
    save_snapshots,
    snapshot_lock,
)
from agentroute.doctor import environment_registry, repository_registry
from agentroute.errors import AgentRouteError
from agentroute.recovery import RecoveryKind, RecoveryOptions, RecoveryOrchestrator


def _print_report(report: SyncReport) -> None:
    if report.baseline:
        console.print(
            f"[dim]Baseline recorded for agent(s) {', '.join(report.baseline)}; "
            f"the next run compares against it[/dim]"
        )
    for mismatch in report.mismatches:
        console.print(f"[yellow]≠ {mismatch}[/yellow]")
    for change in report.pushed:
        console.print(f"[cyan]↑ {change}[/cyan]")
    for failure in report.failed:
        console.print(f"[red]✗ agent {failure.agent_id} ({failure.category}): {failure.error}[/red]")
    if report.complete:
        console.print(
            f"[green]✓ Reconciled {len(report.reconciled)} agent(s), "
            f"{len(report.mismatches)} mismatch(es)[/green]"
        )
    else:
        console.print("[yellow]Report incomplete[/yellow]")


@click.command()
@click.option("--watch", is_flag=True, help="Keep reconciling periodically")
@click.option("--interval", default=60.0, type=float, help="Seconds between runs with --watch")
@click.option(
    "--policy",
    type=click.Choice(["authority-wins", "local-wins"]),
    help="Override the configured conflict policy",
)
@click.pass_context
def reconcile(ctx: click.Context, watch: bool, interval: float, policy: Optional[str]) -> None:
    """Compare agents' last snapshots with GitHub and resolve mismatches.

    Snapshots are kept in .agentroute/snapshots.yaml next to the config
    file. The first run records a baseline; every later run (or every
    --watch interval) reports and resolves what changed since.
    """
    config, store = store_for(ctx)
    coordinator = StateCoordinator(store, config, policy)
    path = state_dir(ctx) / SNAPSHOT_FILENAME

    if watch:
        def record(report: SyncReport) -> None:
            with snapshot_lock(path):
                save_snapshots(path, coordinator.snapshots())
            _print_report(report)

        console.print(f"[dim]Reconciling every {interval:.0f}s ({coordinator.policy}); Ctrl-C to stop[/dim]")
        try:
            with snapshot_lock(path):
                coordinator.seed(load_snapshots(path))
            coordinator.run_forever(interval, on_report=record)
        except Timeout:
            fail(f"{path} is locked by another reconcile")
        except KeyboardInterrupt:
            console.print("\n[dim]Stopped[/dim]")
        return

    try:
        with snapshot_lock(path):
            coordinator.seed(load_snapshots(path))
            report = coordinator.reconcile()
            save_snapshots(path, coordinator.snapshots())
    except Timeout:
        fail(f"{path} is locked by another reconcile")
    _print_report(report)
    if not report.complete:
        ctx.exit(1)


_KIND_STYLES = {
    RecoveryKind.SKIP: "dim",
    RecoveryKind.OPEN_RECOVERY_PR: "green",
    RecoveryKind.REVIEW_AMBIGUOUS: "yellow",
    RecoveryKind.ARCHIVE: "red",
    RecoveryKind.ARCHIVE_PENDING: "yellow",
    RecoveryKind.RESTORE_BRANCH: "cyan",
    RecoveryKind.FREE_AGENT: "cyan",
}


@click.command()
@click.argument("pattern", required=False)
@click.option("--force", is_flag=True, help="Archive branches identical to trunk without asking")
@click.option("--yes", "-y", is_flag=True, help="Answer yes to every archive prompt")
@click.option("--dry-run", is_flag=True, help="Classify only, change nothing")
@click.option("--no-repair", is_flag=True, help="Skip restoring branches and freeing agents")
@click.pass_context
def recover(
    ctx: click.Context,
    pattern: Optional[str],
    force: bool,
    yes: bool,
    dry_run: bool,
    no_repair: bool,
) -> None:
    """Find orphaned agent branches and make their work reviewable.

    PATTERN is a branch glob (default: the configured recovery pattern).
    """
    config, store = store_for(ctx)

    def confirm(branch: str) -> bool:
        return yes or click.confirm(f"Delete {branch} (no commits beyond {config.trunk})?", default=False)

    opts = RecoveryOptions(
        force=force,
        confirm=confirm,
        dry_run=dry_run,
        repair_assignments=not no_repair,
    )
    try:
        actions = RecoveryOrchestrator(store, config).scan_and_recover(pattern, opts)
    except AgentRouteError as e:
        fail(str(e))

    table = Table(title="Recovery" + (" (dry run)" if dry_run else ""))
    table.add_column("Action")
    table.add_column("Branch / Ticket", style="bold")
    table.add_column("Reason")
    table.add_column("Result")
    for action in actions:
        style = _KIND_STYLES.get(action.kind, "white")
        target = action.branch or (f"#{action.ticket_number}" if action.ticket_number else "-")
        if action.error:
            outcome = f"[red]{action.error}[/red]"
        elif action.pr_number:
            outcome = f"PR #{action.pr_number}"
        else:
            outcome = "done" if action.applied else "-"
        table.add_row(f"[{style}]{action.kind.value}[/{style}]", target, action.reason, outcome)
    console.print(table)

    if any(action.error for action in actions):
        ctx.exit(1)


@click.command(name="setup-labels")
@click.pass_context
def setup_labels(ctx: click.Context) -> None:
    """Create the routing labels in the repository."""
    config, store = store_for(ctx)
    labels = config.protocol_labels()
    try:
        store.ensure_labels(labels)
    except AgentRouteError as e:
        fail(str(e))
    console.print(f"[green]✓ Ensured {len(labels)} labels[/green]")


@click.command()
@click.option("--agent", "agent_ids", multiple=True, help="Agent to reset (repeatable; default: all)")
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation")
@click.option("--dry-run", is_flag=True, help="List the tickets that would be released")
@click.pass_context
def reset(ctx: click.Context, agent_ids: tuple[str, ...], yes: bool, dry_run: bool) -> None:
    """Release every ticket held by agents so they can be routed again.

    Removes agent labels and the routing assignee. Branches and pull
    requests stay; run recover to deal with them.
    """
    config, store = store_for(ctx)
    unknown = [a for a in agent_ids if a not in set(config.agent_ids())]
    if unknown:
        fail(f"Unknown agent(s): {', '.join(unknown)} (configured: 1..{config.max_agents})")

    orchestrator = RecoveryOrchestrator(store, config)
    try:
        planned = orchestrator.reset_agents(agent_ids, dry_run=True)
        if not planned:
            console.print("[green]✓ No agent holds any ticket[/green]")
            return
        for action in planned:
            console.print(f"  #{action.ticket_number} ({action.reason})")
        if dry_run:
            console.print(f"[dim]Would release {len(planned)} ticket(s)[/dim]")
            return
        if not yes and not click.confirm(f"Release {len(planned)} ticket(s)?", default=False):
            console.print("[dim]Cancelled[/dim]")
            return
        actions = orchestrator.reset_agents(agent_ids)
    except AgentRouteError as e:
        fail(str(e))

    for action in actions:
        if action.error:
            console.print(f"[red]✗ #{action.ticket_number}: {action.error}[/red]")
    released = sum(1 for action in actions if action.applied)
    console.print(f"[green]✓ Released {released} ticket(s); agents are available[/green]")
    if released != len(actions):
        ctx.exit(1)


@click.command()
@click.pass_context
def doctor(ctx: click.Context) -> None:
    """Check gh authentication, labels and agent state."""
    results = environment_registry().run_all()
    if all(r.passed for r in results):
        config, store = store_for(ctx)
        results += repository_registry(store, config).run_all()
    else:
        console.print("[dim]Skipping repository checks until gh works[/dim]")

    for r in results:
        if r.passed:
            console.print(f"[green]✓[/green] {r.name}: {r.message}")
        else:
            console.print(f"[red]✗[/red] {r.name}: {r.message}")
            if r.fix_hint:
                console.print(f"  [dim]Hint: {r.fix_hint}[/dim]")

    failed = sum(1 for r in results if not r.passed)
    if failed:
        console.print(f"\n[red]{failed} check(s) failed[/red]")
        ctx.exit(1)
    console.print(f"\n[green]All {len(results)} checks passed[/green]")
