"""CLI for agentroute."""

import logging
from pathlib import Path
from typing import Optional

import click


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config", "config_path",
    type=click.Path(exists=True, path_type=Path),
    help="Path to .agentroute.yaml (default: search upwards from cwd)",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], verbose: bool) -> None:
    """agentroute: route tickets to a pool of agents via GitHub.

    Tickets, assignments and pull requests live only in GitHub; every
    command re-reads them before acting.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# Import and register command modules
from agentroute.cli import landing, maintenance, routing  # noqa: E402

main.add_command(routing.route)
main.add_command(routing.pop)
main.add_command(routing.status)
main.add_command(maintenance.reconcile)
main.add_command(maintenance.recover)
main.add_command(maintenance.reset)
main.add_command(maintenance.setup_labels)
main.add_command(maintenance.doctor)
main.add_command(landing.land)
main.add_command(landing.abandon)
