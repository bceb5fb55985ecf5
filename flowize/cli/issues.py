"""Issue commands (promote, fetch)."""

from typing import Optional

import click

from flowize.cli._utils import build_workflow, console, run_operation


@click.group("issues")
def issues_group() -> None:
    """Create and import GitHub issues."""


@issues_group.command("promote")
@click.argument("task_id", required=False)
@click.option("--all", "promote_all", is_flag=True, help="Promote every drafted task")
def promote(task_id: Optional[str], promote_all: bool) -> None:
    """Create GitHub issues for drafted tasks.

    Examples:
        flowize issues promote a1b2c3d
        flowize issues promote --all
    """
    if not task_id and not promote_all:
        console.print("[red]Error: pass a TASK_ID or --all[/red]")
        raise SystemExit(1)

    workflow = build_workflow()
    if promote_all:
        promoted = run_operation(workflow.promote_all())
        console.print(f"[green]✓ Promoted {len(promoted)} task(s)[/green]")
        return

    task = run_operation(workflow.promote(task_id))
    console.print(f"[green]✓ Created issue #{task.issue_number} for {task.id}[/green]")


@issues_group.command("fetch")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def fetch(yes: bool) -> None:
    """Replace the task list with the repository's open issues.

    Examples:
        flowize issues fetch
        flowize issues fetch --yes
    """
    workflow = build_workflow()
    if workflow.tasks and not yes:
        click.confirm(f"Replace {len(workflow.tasks)} local task(s) with open GitHub issues?", abort=True)
    tasks = run_operation(workflow.fetch_issues())
    console.print(f"[green]✓ Imported {len(tasks)} open issue(s)[/green]")
