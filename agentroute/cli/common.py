"""Shared utilities for CLI commands."""

import sys
from pathlib import Path
from typing import NoReturn, Optional

import click
from rich.console import Console

from agentroute.config import Config, find_config_file, load_config
from agentroute.errors import ConfigError, StoreError
from agentroute.github import GitHubStore, ensure_gh_cli
from agentroute.store import AuthoritativeStore

# Shared console instance for all CLI output
console = Console()


def fail(message: str) -> NoReturn:
    """Print an error and exit with status 1."""
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


def load_settings(ctx: click.Context) -> Config:
    """Load configuration once per invocation (cached on the context)."""
    obj = ctx.ensure_object(dict)
    if "config" not in obj:
        path: Optional[Path] = obj.get("config_path")
        try:
            obj["config"] = load_config(path)
        except ConfigError as e:
            fail(str(e))
    return obj["config"]


STATE_DIRNAME = ".agentroute"


def state_dir(ctx: click.Context) -> Path:
    """Directory for local state, next to the config file."""
    path: Optional[Path] = ctx.ensure_object(dict).get("config_path")
    if path is None:
        path = find_config_file(Path.cwd()) or Path.cwd()
    base = path.parent if path.is_file() else path
    return base / STATE_DIRNAME


def get_store(config: Config) -> AuthoritativeStore:
    """Build the GitHub-backed store after checking the gh CLI."""
    try:
        ensure_gh_cli()
    except StoreError as e:
        fail(str(e))
    return GitHubStore(config)


def store_for(ctx: click.Context) -> tuple[Config, AuthoritativeStore]:
    config = load_settings(ctx)
    obj = ctx.ensure_object(dict)
    if "store" not in obj:
        obj["store"] = get_store(config)
    return config, obj["store"]
