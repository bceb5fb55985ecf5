"""Task commands (add, list, edit, delete)."""

from pathlib import Path
from typing import Optional

import click
from rich.table import Table

from flowize.cli._utils import build_workflow, call, console
from flowize.drafting import load_drafts_file, tasks_from_drafts
from flowize.tasks import Priority, TaskStatus

STATUS_STYLES = {
    TaskStatus.FORMATTED: "white",
    TaskStatus.ISSUE_CREATED: "cyan",
    TaskStatus.WORKTREE_INITIALIZING: "yellow",
    TaskStatus.WORKTREE_ACTIVE: "yellow",
    TaskStatus.IMPLEMENTED: "magenta",
    TaskStatus.PUSHED: "magenta",
    TaskStatus.PR_CREATED: "blue",
    TaskStatus.PR_MERGED: "green",
}


@click.group("tasks")
def tasks_group() -> None:
    """Manage drafted tasks."""


@tasks_group.command("add")
@click.argument("drafts_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def add_tasks(drafts_file: Path) -> None:
    """Add drafted tasks from a YAML or JSON file.

    Examples:
        flowize tasks add drafts.yaml
    """
    try:
        drafts = load_drafts_file(drafts_file)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)

    workflow = build_workflow()
    tasks = tasks_from_drafts(drafts, raw_text=drafts_file.read_text())
    call(workflow.add_tasks, tasks)
    console.print(f"[green]✓ Added {len(tasks)} task(s)[/green]")


@tasks_group.command("list")
@click.option("--status", "status_filter", type=click.Choice([s.value for s in TaskStatus]), help="Only this status")
def list_tasks(status_filter: Optional[str]) -> None:
    """List tasks and where they are in the lifecycle."""
    workflow = build_workflow()
    tasks = [t for t in workflow.tasks if status_filter is None or t.status.value == status_filter]
    if not tasks:
        console.print("[dim]No tasks[/dim]")
        return

    table = Table(title="Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Title", style="white")
    table.add_column("Group")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Issue", justify="right")
    table.add_column("PR", justify="right")

    for task in tasks:
        style = STATUS_STYLES.get(task.status, "white")
        status = task.status.value + (" [red](conflict)[/red]" if task.merge_conflict else "")
        table.add_row(
            task.id,
            task.title[:40],
            task.group,
            task.priority.value,
            f"[{style}]{status}[/{style}]",
            f"#{task.issue_number}" if task.issue_number is not None else "",
            f"#{task.pr_number}" if task.pr_number is not None else "",
        )
    console.print(table)


@tasks_group.command("edit")
@click.argument("task_id")
@click.option("--title", help="New title")
@click.option("--description", help="New description")
@click.option("--group", help="New group")
@click.option("--priority", type=click.Choice([p.value for p in Priority], case_sensitive=False))
def edit_task(
    task_id: str,
    title: Optional[str],
    description: Optional[str],
    group: Optional[str],
    priority: Optional[str],
) -> None:
    """Edit a drafted task (only before it is promoted)."""
    workflow = build_workflow()
    task = call(workflow.edit_task, task_id, title=title, description=description, group=group, priority=priority)
    console.print(f"[green]✓ Updated {task.id}: {task.title}[/green]")


@tasks_group.command("delete")
@click.argument("task_id")
def delete_task(task_id: str) -> None:
    """Delete a drafted task (only before it is promoted)."""
    workflow = build_workflow()
    call(workflow.delete_task, task_id)
    console.print(f"[green]✓ Deleted {task_id}[/green]")
