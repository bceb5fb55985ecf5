"""CLI for Flowize."""

import logging

import click
from rich.logging import RichHandler

from flowize import __version__


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Flowize: task-to-pull-request orchestration

    Drive tasks from draft to merged pull request across git worktree slots.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=verbose, show_path=False)],
    )


# Import and register command modules
from flowize.cli import agent
from flowize.cli import issues
from flowize.cli import misc
from flowize.cli import pr
from flowize.cli import slots
from flowize.cli import tasks

main.add_command(tasks.tasks_group)
main.add_command(issues.issues_group)
main.add_command(slots.slots_group)
main.add_command(agent.agent_group)

# Review and PR commands
main.add_command(pr.push)
main.add_command(pr.pr_group)
main.add_command(pr.ci_group)
main.add_command(pr.sync)

main.add_command(misc.bridge_group)
main.add_command(misc.session_group)
main.add_command(misc.states)

__all__ = ["main"]
