"""Worktree slot commands (list, assign, cleanup, resize)."""

from typing import Optional

import click
from rich.table import Table

from flowize.cli._utils import build_workflow, call, console, run_operation


@click.group("slots")
def slots_group() -> None:
    """Manage worktree slots."""


@slots_group.command("list")
def list_slots() -> None:
    """Show every slot and the task bound to it."""
    workflow = build_workflow()

    table = Table(title="Worktree Slots")
    table.add_column("Slot", style="cyan")
    table.add_column("Path")
    table.add_column("Task")
    table.add_column("Status", style="magenta")

    for slot in workflow.pool.slots:
        task = workflow.state.get_task(slot.task_id) if slot.task_id else None
        table.add_row(
            f"WT-{slot.id}",
            slot.path,
            f"{task.id}: {task.title[:30]}" if task else "[dim]free[/dim]",
            task.status.value if task else "",
        )
    console.print(table)


@slots_group.command("assign")
@click.argument("task_id")
@click.option("--slot", "slot_id", type=int, help="Slot number (default: first free slot)")
@click.option("--yes", "-y", is_flag=True, help="Run any offered recovery without asking")
def assign(task_id: str, slot_id: Optional[int], yes: bool) -> None:
    """Create a worktree for a task in a slot.

    Examples:
        flowize slots assign gh-12
        flowize slots assign gh-12 --slot 2
    """
    workflow = build_workflow()
    slot = run_operation(workflow.assign(task_id, slot_id), yes=yes)
    if slot is not None:
        console.print(f"[green]✓ {task_id} is active in WT-{slot.id} ({slot.path})[/green]")


@slots_group.command("cleanup")
@click.argument("slot_id", type=int)
def cleanup(slot_id: int) -> None:
    """Remove a slot's worktree and send its task back to the backlog."""
    workflow = build_workflow()
    task = run_operation(workflow.cleanup_slot(slot_id))
    suffix = f" ({task.id} back to ISSUE_CREATED)" if task is not None else ""
    console.print(f"[green]✓ WT-{slot_id} cleaned up{suffix}[/green]")


@slots_group.command("resize")
@click.argument("count", type=int)
def resize(count: int) -> None:
    """Change the number of worktree slots."""
    workflow = build_workflow()
    released = call(workflow.resize_slots, count)
    console.print(f"[green]✓ {len(workflow.pool)} slot(s) configured[/green]")
    for task_id in released:
        console.print(f"[yellow]Released {task_id} from a removed slot[/yellow]")
