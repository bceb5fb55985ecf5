"""Git worktree management for Flowize.

All git and filesystem work happens on the user's machine through the local
bridge; this module decides which commands to run and how to read their
output.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from flowize import commands
from flowize.bridge import BridgeClient
from flowize.config import Config
from flowize.errors import CommandFailure, ConflictError, FlowizeError, RecoveryAction, RecoveryKind
from flowize.tasks import Task, build_issue_brief

logger = logging.getLogger(__name__)

REMOVE_RETRY_DELAYS = (0.0, 0.8, 1.8, 3.5)
REMOVE_DIRECTORY_RETRY_DELAYS = (0.0, 0.5, 1.2, 2.5, 5.0)

_DIVERGED = re.compile(r"fetch first|non-fast-forward|failed to push some refs|auto-rebase failed", re.IGNORECASE)
_NEEDS_SYNC = re.compile(r"fetch first|non-fast-forward|failed to push some refs", re.IGNORECASE)
_BUSY_MARKERS = ("ebusy", "resource busy", "operation not permitted", "permission denied", "access is denied")
_CONFLICT_MARKERS = ("not mergeable", "merge conflict", "conflict between base and head")


@dataclass
class WorktreeEntry:
    """One block of ``git worktree list --porcelain``."""

    path: str
    branch: Optional[str] = None


@dataclass
class AgentWorkspace:
    """Where the agent brief and skill live inside a worktree."""

    directory: str
    issue_file: str
    skill_file: str
    source_skill_file: str


def parse_worktree_list(porcelain: str) -> list[WorktreeEntry]:
    entries = []
    for block in porcelain.replace("\r\n", "\n").split("\n\n"):
        path = ""
        branch = None
        for line in block.strip().split("\n"):
            if line.startswith("worktree "):
                path = line[len("worktree "):].strip()
            elif line.startswith("branch refs/heads/"):
                branch = line[len("branch refs/heads/"):].strip()
        if path:
            entries.append(WorktreeEntry(path=path, branch=branch))
    return entries


def normalize_worktree_path(value: str) -> str:
    """Comparable form of a path: forward slashes, no trailing slash, lowercase."""
    return value.replace("\\", "/").rstrip("/").lower()


def is_busy_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _BUSY_MARKERS)


def is_not_worktree_error(message: str) -> bool:
    return "not a working tree" in message.lower()


def is_diverged_push_error(message: str) -> bool:
    """True if a push failed because the remote branch moved on."""
    return bool(_DIVERGED.search(message))


def is_merge_conflict_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _CONFLICT_MARKERS)


def agent_workspace(config: Config, worktree_path: str) -> AgentWorkspace:
    directory = commands.join_path(worktree_path, config.agent_subdir.strip() or ".agent-workspace")
    return AgentWorkspace(
        directory=directory,
        issue_file=commands.join_path(directory, "issue-description.md"),
        skill_file=commands.join_path(directory, "SKILL.md"),
        source_skill_file=commands.resolve_path_for_worktree(worktree_path, config.agent_skill_file),
    )


def startup_command(config: Config) -> str:
    """Command the worktree window starts with."""
    name = config.agent_name.strip().replace('"', "")
    return f'opencode --agent "{name}"' if name else "opencode"


class WorktreeManager:
    """Creates, pushes and removes slot worktrees through the bridge."""

    def __init__(
        self,
        bridge: BridgeClient,
        config: Config,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.bridge = bridge
        self.config = config
        self.sleep = sleep

    async def _run(self, command: str, path: str, branch: Optional[str] = None, setup: bool = False) -> str:
        timeout = self.config.bridge.setup_timeout_s if setup else None
        result = await self.bridge.run_sync(
            command, {"worktreePath": path, "branch": branch}, timeout=timeout
        )
        return result.stdout

    async def list_worktrees(self, path: str) -> list[WorktreeEntry]:
        return parse_worktree_list(await self._run(commands.worktree_list(), path))

    async def create(self, task: Task, path: str, title: str, from_existing_branch: bool = False) -> None:
        """Check out ``task.branch_name`` at ``path`` and prepare the agent workspace.

        A worktree already at ``path`` on the same branch is reused. A new branch
        starts from ``origin/<default branch>``, unless ``from_existing_branch``
        is set (reopening an open PR), in which case it starts from the remote
        branch itself.

        Raises:
            ConflictError: If the path or branch is already taken, or the path
                exists and is not a managed worktree
            CommandFailure: If a git command fails
        """
        branch = task.branch_name
        if not branch:
            raise ConflictError(f"Task {task.id} has no branch name; cannot create a worktree")

        logger.info("Initializing worktree for %s at %s", branch, path)
        await self._run(commands.fetch_origin(), path, branch, setup=True)
        await self._run(commands.worktree_prune(), path, branch)

        worktrees = await self.list_worktrees(path)
        target = normalize_worktree_path(path)
        existing = next((w for w in worktrees if normalize_worktree_path(w.path) == target), None)

        if existing is not None:
            if existing.branch == branch:
                logger.info("Reusing existing worktree %s on %s", path, branch)
                await self._prepare(task, path, title)
                return
            raise ConflictError(
                f"Target path already mapped to branch '{existing.branch or 'unknown'}'. "
                f"Cleanup slot path '{path}' before reassigning.",
                recovery=RecoveryAction("Cleanup existing worktree", RecoveryKind.CLEANUP_WORKTREE, target=path),
            )

        in_use = next((w for w in worktrees if w.branch == branch), None)
        if in_use is not None:
            raise ConflictError(
                f"Branch '{branch}' is already checked out at '{in_use.path}'. "
                "Use that worktree, or cleanup it before reassigning.",
                recovery=RecoveryAction(
                    "Cleanup existing worktree", RecoveryKind.CLEANUP_WORKTREE, target=in_use.path
                ),
            )

        if commands.is_yes(await self._run(commands.path_exists(path), path, branch)):
            raise ConflictError(
                f"Target directory '{path}' already exists but is not a managed git worktree. "
                "Remove or rename it, then retry."
            )

        if commands.is_yes(await self._run(commands.local_branch_exists(branch), path, branch)):
            command = commands.worktree_add(path, branch)
        elif from_existing_branch and commands.is_yes(
            await self._run(commands.remote_branch_exists(branch), path, branch)
        ):
            command = commands.worktree_add_new_branch(path, branch, branch)
        else:
            command = commands.worktree_add_new_branch(path, branch, self.config.default_branch)

        logger.info("> %s", command)
        await self._run(command, path, branch, setup=True)
        await self._prepare(task, path, title)
        logger.info("Worktree ready at %s", path)

    async def _prepare(self, task: Task, path: str, title: str) -> None:
        await self._run(commands.copy_env_files(self.config.worktree_root, path), path, task.branch_name)
        await self.setup_agent_workspace(task, path)
        await self.open_window(path, title)

    async def setup_agent_workspace(self, task: Task, path: str) -> AgentWorkspace:
        """Write the issue brief and SKILL file the agent works from."""
        workspace = agent_workspace(self.config, path)
        command = commands.ensure_agent_workspace(
            workspace.directory,
            workspace.issue_file,
            build_issue_brief(task),
            workspace.source_skill_file,
            workspace.skill_file,
        )
        await self.bridge.run_sync(command, {
            "worktreePath": path,
            "branch": task.branch_name,
            "issueNumber": task.issue_number,
            "issueDescriptionFile": workspace.issue_file,
        })
        logger.debug("Agent workspace ready at %s", workspace.directory)
        return workspace

    async def open_window(self, path: str, title: str) -> None:
        """Open a terminal in the worktree; failures only log a warning."""
        try:
            await self.bridge.open_window(path, title, startup_command(self.config))
        except FlowizeError as e:
            logger.warning("Unable to open a window for %s: %s", path, e)

    async def _remove_directory(self, path: str, branch: Optional[str]) -> bool:
        """Delete ``path`` outright, retrying while it is busy.

        Returns:
            False if the directory stayed busy through every retry
        """
        last_error = ""
        for delay in REMOVE_DIRECTORY_RETRY_DELAYS:
            if delay:
                await self.sleep(delay)
            try:
                await self._run(commands.remove_directory(path), path, branch)
                return True
            except CommandFailure as e:
                last_error = str(e)
                if not is_busy_error(last_error):
                    raise

        logger.warning("Directory still busy, skipped physical delete for %s: %s", path, last_error)
        return False

    async def prune(self, path: str, branch: Optional[str] = None) -> None:
        """Remove the worktree at ``path`` and prune git's worktree records.

        Raises:
            CommandFailure: If removal fails for a reason other than a busy
                directory
        """
        logger.info("Cleaning up worktree at %s", path)

        removed = False
        for delay in REMOVE_RETRY_DELAYS:
            if delay:
                await self.sleep(delay)
            try:
                await self._run(commands.worktree_remove(path), path, branch)
                removed = True
                break
            except CommandFailure as e:
                message = str(e)
                if is_not_worktree_error(message):
                    logger.warning("%s is not a git worktree, removing directory", path)
                    await self._remove_directory(path, branch)
                    removed = True
                    break
                if is_busy_error(message):
                    logger.warning("Worktree still busy, retrying remove for %s: %s", path, message)
                    continue
                raise

        if not removed:
            await self._remove_directory(path, branch)

        try:
            await self._run(commands.worktree_prune(), path, branch)
        except CommandFailure as e:
            if not is_busy_error(str(e)):
                raise
            logger.warning("git worktree prune skipped while path is busy: %s", e)

    async def _sync_with_remote(self, path: str, branch: str) -> None:
        """Rebase onto ``origin/<branch>`` if the remote branch exists."""
        await self._run(commands.fetch_branch(branch, cwd=path), path, branch)
        if not commands.is_yes(await self._run(commands.remote_branch_exists(branch, cwd=path), path, branch)):
            return

        try:
            await self._run(commands.rebase_onto_remote(branch, cwd=path), path, branch)
        except CommandFailure as e:
            try:
                await self._run(commands.rebase_abort(cwd=path), path, branch)
            except FlowizeError as abort_error:
                logger.warning("git rebase --abort failed in %s: %s", path, abort_error)
            raise ConflictError(
                f"Remote branch '{branch}' has newer commits and auto-rebase failed. "
                f"Resolve conflicts in the worktree and retry push. Details: {e}",
                recovery=RecoveryAction("Force push with lease", RecoveryKind.FORCE_PUSH_WITH_LEASE, target=branch),
            ) from e

    async def push(self, path: str, branch: str) -> None:
        """Commit all changes in the worktree and push ``branch``.

        A push rejected because the remote moved on is synced and retried once.

        Raises:
            ConflictError: If the branch has diverged from its remote; carries a
                force-with-lease recovery
            CommandFailure: If a git command fails for another reason
        """
        if not branch:
            raise ConflictError("Branch name is required to push worktree changes.")

        await self._run(commands.commit_all(branch, cwd=path), path, branch)
        await self._sync_with_remote(path, branch)

        try:
            await self._run(commands.push_upstream(branch, cwd=path), path, branch)
            return
        except CommandFailure as e:
            if not _NEEDS_SYNC.search(str(e)):
                raise
            logger.info("Push of %s rejected, syncing with remote and retrying", branch)

        await self._sync_with_remote(path, branch)
        try:
            await self._run(commands.push_upstream(branch, cwd=path), path, branch)
        except CommandFailure as e:
            if not is_diverged_push_error(str(e)):
                raise
            raise ConflictError(
                f"Branch '{branch}' has diverged from origin: {e}",
                recovery=RecoveryAction("Force push with lease", RecoveryKind.FORCE_PUSH_WITH_LEASE, target=branch),
            ) from e

    async def force_push_with_lease(self, path: str, branch: str) -> None:
        if not branch:
            raise ConflictError("Branch name is required to push worktree changes.")
        await self._run(commands.push_force_with_lease(branch, cwd=path), path, branch)
