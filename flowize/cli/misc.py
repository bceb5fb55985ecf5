"""Bridge, session and lifecycle commands."""

from typing import Optional

import click
from rich.table import Table

from flowize.cli._utils import build_workflow, call, console, run_operation
from flowize.state_machine import generate_diagram, get_all_transitions


@click.group("bridge")
def bridge_group() -> None:
    """Local automation bridge."""


@bridge_group.command("health")
def health() -> None:
    """Check that the local bridge is reachable."""
    workflow = build_workflow()
    if not workflow.bridge.configured:
        console.print("[red]Error: agent_endpoint is not configured[/red]")
        raise SystemExit(1)

    status = run_operation(workflow.bridge.health())
    console.print(f"[green]✓ Bridge healthy at {status.endpoint}[/green]")
    if status.async_jobs is False:
        console.print("[yellow]Bridge does not report async job support[/yellow]")


@click.group("session")
def session_group() -> None:
    """Local session state."""


@session_group.command("clear")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def clear(yes: bool) -> None:
    """Forget all tasks and slot bindings."""
    if not yes:
        click.confirm("Clear all local tasks and slot bindings?", abort=True)
    workflow = build_workflow()
    call(workflow.clear_session)
    console.print("[green]✓ Session cleared[/green]")


@click.command("states")
@click.option("--dot", is_flag=True, help="Print a Graphviz DOT diagram instead")
@click.option("--title", default=None, help="Diagram title")
def states(dot: bool, title: Optional[str]) -> None:
    """Show the task lifecycle transitions."""
    if dot:
        click.echo(generate_diagram(title) if title else generate_diagram())
        return

    table = Table(title="Task Lifecycle")
    table.add_column("Trigger", style="cyan")
    table.add_column("From")
    table.add_column("To", style="magenta")
    for t in get_all_transitions():
        sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
        table.add_row(t["trigger"], ", ".join(sources), t["dest"])
    console.print(table)
