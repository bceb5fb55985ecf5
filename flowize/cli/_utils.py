"""Shared utilities for CLI modules."""

import asyncio
import sys
from pathlib import Path
from typing import Any, Awaitable, Optional

import click
from rich.console import Console

from flowize.bridge import BridgeClient
from flowize.config import Config, load_config
from flowize.errors import FlowizeError, OperationError, RecoveryAction, error_message
from flowize.github import GitHubClient
from flowize.state import YamlStateStore
from flowize.workflow import Workflow

# Shared Rich console instance for all CLI modules
console = Console()


def build_workflow(config: Optional[Config] = None, base: Optional[Path] = None) -> Workflow:
    """Wire a Workflow from the on-disk config and state.

    The GitHub tracker is only attached when a token is configured.
    """
    if config is None:
        config = load_config()
    store = YamlStateStore(config.get_state_path(base))
    bridge = BridgeClient.from_config(config)
    tracker = GitHubClient.from_config(config) if config.has_github_token else None
    return Workflow(config, store, bridge, tracker)


def _print_error(error: FlowizeError) -> None:
    if isinstance(error, OperationError):
        console.print(f"[red]{error.title}[/red]")
    console.print(f"[red]Error: {error_message(error)}[/red]")


def _offer_recovery(recovery: RecoveryAction, yes: bool) -> None:
    if recovery.run is None:
        return
    target = f" ({recovery.target})" if recovery.target else ""
    console.print(f"[yellow]Recovery available: {recovery.label}{target}[/yellow]")
    if not yes and not click.confirm(f"Run '{recovery.label}' now?", default=False):
        console.print("[dim]Skipped.[/dim]")
        sys.exit(1)

    try:
        asyncio.run(recovery.run())
    except FlowizeError as e:
        _print_error(e)
        sys.exit(1)
    console.print(f"[green]✓ {recovery.label} completed[/green]")


def run_operation(coro: Awaitable[Any], yes: bool = False) -> Any:
    """Run a workflow coroutine, reporting failures and offering recovery.

    Exits:
        With code 1 on failure, unless an offered recovery ran successfully
    """
    try:
        return asyncio.run(coro)  # type: ignore[arg-type]
    except FlowizeError as e:
        _print_error(e)
        if e.recovery is not None:
            _offer_recovery(e.recovery, yes)
            return None
        sys.exit(1)


def call(func: Any, *args: Any, **kwargs: Any) -> Any:
    """Run a synchronous workflow operation, reporting failures."""
    try:
        return func(*args, **kwargs)
    except FlowizeError as e:
        _print_error(e)
        sys.exit(1)


__all__ = [
    "console",
    "build_workflow",
    "run_operation",
    "call",
]
