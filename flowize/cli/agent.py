"""Agent commands (run, cancel)."""

import click

from flowize.cli._utils import build_workflow, console, run_operation
from flowize.jobs import AgentProgress


@click.group("agent")
def agent_group() -> None:
    """Run the code-generation agent in a worktree."""


@agent_group.command("run")
@click.argument("task_id")
@click.option("--show-logs", is_flag=True, help="Print the full logs after every poll")
def run_agent(task_id: str, show_logs: bool) -> None:
    """Run the agent for a task in its worktree slot."""
    workflow = build_workflow()
    announced: set[str] = set()

    def on_progress(progress: AgentProgress) -> None:
        if show_logs:
            console.print(progress.logs, markup=False, highlight=False)
        elif progress.job_id and progress.job_id not in announced:
            announced.add(progress.job_id)
            console.print(f"[dim]Agent job {progress.job_id} started[/dim]")

    with console.status(f"Running agent for {task_id}..."):
        task = run_operation(workflow.run_agent(task_id, on_progress))

    console.print(f"[green]✓ {task.id} implemented[/green]")
    if task.implementation_details:
        console.print(task.implementation_details, markup=False, highlight=False)


@agent_group.command("cancel")
@click.argument("job_id")
def cancel(job_id: str) -> None:
    """Cancel a running agent job on the bridge."""
    workflow = build_workflow()
    run_operation(workflow.cancel_agent_job(job_id))
    console.print(f"[green]✓ Cancel requested for job {job_id}[/green]")
