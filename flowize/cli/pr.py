"""Push, review and pull request commands."""

import click

from flowize.cli._utils import build_workflow, call, console, run_operation
from flowize.tasks import CheckState


@click.command("push")
@click.argument("task_id")
@click.option("--force-with-lease", is_flag=True, help="Force push, refusing if the remote moved unexpectedly")
@click.option("--yes", "-y", is_flag=True, help="Run any offered recovery without asking")
def push(task_id: str, force_with_lease: bool, yes: bool) -> None:
    """Commit and push a task's worktree branch."""
    workflow = build_workflow()
    task = run_operation(workflow.push(task_id, force_with_lease=force_with_lease), yes=yes)
    if task is not None:
        console.print(f"[green]✓ Pushed {task.branch_name}[/green]")


@click.group("pr")
def pr_group() -> None:
    """Review, open and merge pull requests."""


@pr_group.command("approve")
@click.argument("task_id")
@click.option("--yes", "-y", is_flag=True, help="Run any offered recovery without asking")
def approve(task_id: str, yes: bool) -> None:
    """Push a task's work and open its pull request."""
    workflow = build_workflow()
    task = run_operation(workflow.approve(task_id), yes=yes)
    if task is not None:
        console.print(f"[green]✓ Opened PR #{task.pr_number} for {task.id}[/green]")
        if task.issue_url:
            console.print(f"[dim]{task.issue_url}[/dim]")


@pr_group.command("request-changes")
@click.argument("task_id")
@click.option("--feedback", "-f", default="", help="Feedback for the next agent run")
def request_changes(task_id: str, feedback: str) -> None:
    """Send a task back to its worktree."""
    workflow = build_workflow()
    task = call(workflow.request_changes, task_id, feedback)
    console.print(f"[yellow]↺ {task.id} is back in {task.status.value}[/yellow]")


@pr_group.command("merge")
@click.argument("task_id")
@click.option("--yes", "-y", is_flag=True, help="Run any offered recovery without asking")
def merge(task_id: str, yes: bool) -> None:
    """Merge a task's pull request."""
    workflow = build_workflow()
    task = run_operation(workflow.merge(task_id), yes=yes)
    if task is not None:
        console.print(f"[green]✓ Merged PR #{task.pr_number}[/green]")


@pr_group.command("resolve-conflict")
@click.argument("task_id")
def resolve_conflict(task_id: str) -> None:
    """Reopen a conflicting PR's branch in a free worktree slot."""
    workflow = build_workflow()
    slot = run_operation(workflow.resolve_conflict(task_id))
    if slot is not None:
        console.print(f"[green]✓ Conflict workspace ready in WT-{slot.id} ({slot.path})[/green]")


CHECK_STYLES = {
    CheckState.SUCCESS: "green",
    CheckState.FAILED: "red",
    CheckState.PENDING: "yellow",
}


@click.group("ci")
def ci_group() -> None:
    """Continuous integration status."""


@ci_group.command("check")
def check() -> None:
    """Refresh CI status for every open pull request."""
    workflow = build_workflow()
    results = run_operation(workflow.check_ci())
    if not results:
        console.print("[dim]No open pull requests[/dim]")
        return
    for task_id, state in results.items():
        style = CHECK_STYLES[state]
        console.print(f"{task_id}: [{style}]{state.value}[/{style}]")


@click.command("sync")
def sync() -> None:
    """Fold open and merged pull requests into the task list."""
    workflow = build_workflow()
    report = run_operation(workflow.sync())
    console.print(
        f"[green]✓ Synced: {len(report.created)} new, {len(report.updated)} updated, "
        f"{len(report.kept_local)} kept local[/green]"
    )
