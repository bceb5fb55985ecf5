"""Running the code-generation agent inside a slot worktree."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from flowize import commands
from flowize.bridge import BridgeClient, CommandResult
from flowize.config import Config
from flowize.errors import CommandFailure, OperationError
from flowize.jobs import AgentProgress, JobPoller, ProgressCallback, format_job_logs
from flowize.tasks import Task, build_issue_brief
from flowize.worktree import agent_workspace

logger = logging.getLogger(__name__)

CANCELLED_EXIT_CODE = 130


@dataclass
class AgentRunResult:
    implementation: str
    logs: str
    command: str
    job_id: Optional[str] = None


def _result_logs(result: CommandResult) -> str:
    return "\n".join([
        f"Endpoint: {result.endpoint}",
        f"Command: {result.command}",
        "State: completed",
        "",
        f"STDOUT:\n{result.stdout}" if result.stdout else "STDOUT: <empty>",
        "",
        f"STDERR:\n{result.stderr}" if result.stderr else "STDERR: <empty>",
        "",
        f"Exit Code: {result.exit_code if result.exit_code is not None else 0}",
    ])


class AgentRunner:
    """Builds the agent command for a task and runs it as a bridge job."""

    def __init__(self, bridge: BridgeClient, config: Config, poller: Optional[JobPoller] = None) -> None:
        self.bridge = bridge
        self.config = config
        self.poller = poller or JobPoller(bridge, config.bridge)

    def build_command(self, task: Task, worktree_path: str) -> str:
        """Fill the configured agent command template for ``task``.

        Raises:
            OperationError: If the task lacks an issue or branch, or no agent
                command is configured
        """
        if task.issue_number is None or not task.branch_name:
            raise OperationError("Agent run", "Missing issue number or branch name for sub-agent execution.")

        template = self.config.agent_command.strip()
        if not template:
            raise OperationError("Agent run", "Agent command is not configured.")

        workspace = agent_workspace(self.config, worktree_path)
        shell_path = commands.to_shell_path(worktree_path)
        agent_name = self.config.agent_name.strip()

        windows = commands.is_windows_path(worktree_path)

        command = commands.fill_template(template, {
            "issueNumber": str(task.issue_number),
            "branch": task.branch_name,
            "title": task.title,
            "worktreePath": shell_path,
            "agentWorkspace": commands.to_shell_path(workspace.directory),
            "agentName": agent_name,
            "agentFlag": f"--agent {commands.quote_arg(agent_name, windows)}" if agent_name else "",
            "issueDescriptionFile": commands.to_shell_path(workspace.issue_file),
            "briefFile": commands.to_shell_path(workspace.issue_file),
            "skillFile": commands.to_shell_path(workspace.skill_file),
        }, windows=windows, raw=("agentFlag",))
        return commands.ensure_windows_drive_switch(commands.ensure_print_logs_flag(command), shell_path)

    async def run(
        self,
        task: Task,
        worktree_path: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AgentRunResult:
        """Run the agent for ``task`` and return its implementation output.

        Raises:
            CommandFailure: If the agent exited with an error or produced no output
            JobTimeoutError: If the job went stale (it has been cancelled)
            ConnectivityError: If the bridge could not be reached
        """
        command = self.build_command(task, worktree_path)
        workspace = agent_workspace(self.config, worktree_path)

        await self.bridge.run_sync(
            commands.ensure_agent_workspace(
                workspace.directory,
                workspace.issue_file,
                build_issue_brief(task),
                workspace.source_skill_file,
                workspace.skill_file,
            ),
            {
                "worktreePath": worktree_path,
                "branch": task.branch_name,
                "issueNumber": task.issue_number,
                "issueDescriptionFile": workspace.issue_file,
            },
        )

        handle = await self.bridge.run_async(command, {
            "issueNumber": task.issue_number,
            "branch": task.branch_name,
            "worktreePath": worktree_path,
            "issueDescriptionFile": workspace.issue_file,
            "skillFile": workspace.skill_file,
            "title": task.title,
        })

        if handle.job_id is None and handle.result is not None:
            # The bridge ran the command synchronously
            stdout = handle.result.stdout
            logs = _result_logs(handle.result)
            if on_progress is not None:
                on_progress(AgentProgress(logs=logs, done=True, success=True))
        elif handle.job_id is not None:
            if on_progress is not None:
                on_progress(AgentProgress(
                    logs=f"Agent job started. jobId={handle.job_id}", done=False, success=False, job_id=handle.job_id
                ))
            job = await self.poller.wait(handle.endpoint, command, handle.job_id, on_progress)
            logs = format_job_logs(handle.endpoint, command, job, self.poller.clock())
            if not job.succeeded:
                raise CommandFailure(
                    handle.endpoint, command, exit_code=job.exit_code, stderr=job.stderr, message=job.error
                )
            stdout = job.stdout
        else:
            stdout, logs = "", ""

        if not stdout.strip():
            raise CommandFailure(
                handle.endpoint,
                command,
                message="Sub-agent completed with no output. Verify the agent command syntax.",
            )

        logger.info("Agent finished for task %s (%d chars of output)", task.id, len(stdout))
        return AgentRunResult(implementation=stdout, logs=logs, command=command, job_id=handle.job_id)

    async def cancel(self, job_id: str) -> None:
        """User-initiated cancellation of a running agent job."""
        await self.bridge.cancel(job_id)
