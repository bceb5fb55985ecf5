"""Folding externally observed issue and PR state into local tasks.

Local progress always wins over a remote snapshot. A task that is being
worked on in a local worktree keeps its status whatever is observed for its
PR. A task carrying a pending merge conflict keeps its status when its PR is
seen open, and a merged task is never downgraded.

Only one pass runs at a time. A pass requested while the same pass is already
in flight is coalesced and receives the in-flight pass's result.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from flowize.github import IssueTracker, PullRequest
from flowize.state import WorkflowState
from flowize.state_machine import resolve_external_status
from flowize.tasks import (
    CheckState,
    Priority,
    Task,
    TaskStatus,
    group_from_labels,
    priority_from_labels,
)

logger = logging.getLogger(__name__)

IMPORT_GROUP = "GitHub Import"


@dataclass
class SyncReport:
    """What a pull request sync pass changed."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    kept_local: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated)


class Reconciler:
    """Merges tracker state into ``state.tasks`` in place."""

    def __init__(self, tracker: IssueTracker, state: WorkflowState) -> None:
        self.tracker = tracker
        self.state = state
        self._lock = asyncio.Lock()
        self._inflight: dict[str, asyncio.Future[Any]] = {}

    async def _coalesced(self, name: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``factory`` under the pass lock, or join the identical pass already running."""
        running = self._inflight.get(name)
        if running is not None and not running.done():
            logger.debug("Reconciliation pass '%s' already running; joining it", name)
            return await asyncio.shield(running)

        async def locked() -> Any:
            async with self._lock:
                return await factory()

        future = asyncio.ensure_future(locked())
        self._inflight[name] = future
        try:
            return await asyncio.shield(future)
        finally:
            if self._inflight.get(name) is future and future.done():
                del self._inflight[name]

    async def sync_pull_requests(self) -> SyncReport:
        """Fold open and merged PRs into the task list."""
        return await self._coalesced("pull_requests", self._sync_pull_requests)

    async def prune_closed_issues(self) -> list[str]:
        """Drop ISSUE_CREATED tasks whose issue is no longer open upstream.

        Returns:
            Ids of removed tasks
        """
        return await self._coalesced("closed_issues", self._prune_closed_issues)

    async def import_open_issues(self) -> list[Task]:
        """Replace the task list with the tracker's open issues."""
        return await self._coalesced("import_issues", self._import_open_issues)

    async def _sync_pull_requests(self) -> SyncReport:
        merged, open_prs = await asyncio.gather(
            self.tracker.list_merged_pull_requests(),
            self.tracker.list_open_pull_requests(),
        )
        merged_numbers = {pr.number for pr in merged}
        report = SyncReport()

        for pr in open_prs:
            if pr.number not in merged_numbers:
                self._apply(pr, TaskStatus.PR_CREATED, report)
        for pr in merged:
            self._apply(pr, TaskStatus.PR_MERGED, report)

        logger.info(
            "PR sync: %d created, %d updated, %d kept local",
            len(report.created), len(report.updated), len(report.kept_local),
        )
        return report

    def _find_by_pr(self, number: int) -> Optional[Task]:
        for task in self.state.tasks:
            if task.pr_number == number:
                return task
        return None

    def _apply(self, pr: PullRequest, external: TaskStatus, report: SyncReport) -> None:
        task = self._find_by_pr(pr.number)

        if task is None:
            synthetic_id = f"gh-pr-{pr.number}"
            if self.state.get_task(synthetic_id) is not None:
                return
            self.state.tasks.append(Task(
                id=synthetic_id,
                raw_text=pr.title,
                title=pr.title,
                description=pr.body,
                group=IMPORT_GROUP,
                priority=Priority.MEDIUM,
                status=external,
                pr_number=pr.number,
                issue_url=pr.url or None,
                branch_name=pr.branch or None,
                ci_status=CheckState.PENDING,
                merge_conflict=False,
            ))
            report.created.append(synthetic_id)
            return

        next_status = resolve_external_status(task, external)
        # Only an observed merge clears a conflict; a fresh local detection is never undone by a snapshot
        next_conflict = False if next_status == TaskStatus.PR_MERGED else task.merge_conflict
        next_branch = task.branch_name or pr.branch or None
        next_url = pr.url or task.issue_url

        if next_status != external:
            report.kept_local.append(task.id)

        if (
            task.status != next_status
            or task.issue_url != next_url
            or task.branch_name != next_branch
            or task.merge_conflict != next_conflict
        ):
            task.status = next_status
            task.issue_url = next_url
            task.branch_name = next_branch
            task.merge_conflict = next_conflict
            report.updated.append(task.id)

    async def _open_issue_numbers(self) -> set[int]:
        return {issue.number for issue in await self.tracker.list_open_issues()}

    async def _prune_closed_issues(self) -> list[str]:
        open_numbers = await self._open_issue_numbers()
        removed = [
            task.id
            for task in self.state.tasks
            if task.status == TaskStatus.ISSUE_CREATED
            and task.issue_number is not None
            and task.issue_number not in open_numbers
        ]
        if removed:
            self.state.tasks = [task for task in self.state.tasks if task.id not in removed]
            logger.info("Removed %d tasks whose issues were closed: %s", len(removed), ", ".join(removed))
        return removed

    async def _import_open_issues(self) -> list[Task]:
        issues = await self.tracker.list_open_issues()
        tasks = [
            Task(
                id=f"gh-{issue.number}",
                raw_text=issue.title,
                title=issue.title,
                description=issue.body,
                group=group_from_labels(issue.labels, default=IMPORT_GROUP),
                priority=priority_from_labels(issue.labels),
                status=TaskStatus.ISSUE_CREATED,
                issue_number=issue.number,
                issue_url=issue.url or None,
            )
            for issue in issues
        ]
        self.state.tasks = tasks
        logger.info("Imported %d open issues", len(tasks))
        return tasks
