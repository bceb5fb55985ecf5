"""User-facing workflow operations.

Every operation that wraps an external call runs in two phases: the local
reservation is made and persisted first (slot bound, status moved forward),
then the external call runs, and its outcome either commits the reservation or
rolls it back to the nearest safe status. State is saved after each phase.

Failures that the user can fix with an explicit step are raised as
``OperationError`` carrying a ``RecoveryAction``; nothing is retried across
operations automatically.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from flowize import processes
from flowize.agent import CANCELLED_EXIT_CODE, AgentRunner
from flowize.bridge import BridgeClient
from flowize.config import Config
from flowize.errors import (
    CommandFailure,
    ConflictError,
    FlowizeError,
    JobTimeoutError,
    OperationError,
    RecoveryAction,
    RecoveryKind,
    error_message,
)
from flowize.github import IssueTracker
from flowize.jobs import ProgressCallback
from flowize.reconcile import Reconciler, SyncReport
from flowize.slots import SlotPool, WorktreeSlot
from flowize.state import StateStore, WorkflowState
from flowize.state_machine import InvalidTransitionError, TaskStateMachine, transition
from flowize.tasks import (
    LOCAL_WORKTREE_STATUSES,
    AgentRunState,
    CheckState,
    Task,
    TaskStatus,
    build_branch_name,
    build_issue_body,
    build_issue_labels,
    slugify,
)
from flowize.worktree import WorktreeManager, is_diverged_push_error, is_merge_conflict_error

logger = logging.getLogger(__name__)

_CHECKED_OUT_AT = re.compile(r"already checked out at '([^']+)'", re.IGNORECASE)

EDITABLE_FIELDS = ("title", "description", "group", "priority")


def slot_title(slot: WorktreeSlot) -> str:
    return f"Flowize WT-{slot.id}"


class Workflow:
    """The orchestration core: tasks, slots and the collaborators that act on them.

    Args:
        config: Flowize configuration
        store: Where state is persisted after every transition
        bridge: Local bridge client
        tracker: Issue tracker; operations that need it fail without one
        worktrees: Worktree manager (default: built from ``bridge``)
        agent: Agent runner (default: built from ``bridge``)
    """

    def __init__(
        self,
        config: Config,
        store: StateStore,
        bridge: BridgeClient,
        tracker: Optional[IssueTracker] = None,
        worktrees: Optional[WorktreeManager] = None,
        agent: Optional[AgentRunner] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.bridge = bridge
        self.tracker = tracker
        self.worktrees = worktrees or WorktreeManager(bridge, config)
        self.agent = agent or AgentRunner(bridge, config)

        self.state: WorkflowState = store.load_state()
        saved = self.state.slots
        # Rebuild the pool as saved, then resize so dropped bindings release their tasks
        self.pool = SlotPool(
            config.worktree_root,
            max(s.id for s in saved) if saved else config.max_worktrees,
            saved,
        )
        self.pool.drop_unknown_tasks(t.id for t in self.state.tasks)
        released = self.pool.resize(self.state.slot_count or config.max_worktrees, config.worktree_root)
        self._detach_released(released)
        self.reconciler = Reconciler(tracker, self.state) if tracker is not None else None
        if released:
            self.save()

    # Helpers

    @property
    def tasks(self) -> list[Task]:
        return self.state.tasks

    def save(self) -> None:
        self.state.slots = self.pool.slots
        self.store.save_state(self.state)

    def get_task(self, task_id: str) -> Task:
        task = self.state.get_task(task_id)
        if task is None:
            raise OperationError("Unknown task", f"Task '{task_id}' not found")
        return task

    def _require_tracker(self, action: str) -> IssueTracker:
        if self.tracker is None:
            raise OperationError(
                "GitHub Token Required", f"Cannot {action} without a GitHub token. Set GITHUB_TOKEN or github_token."
            )
        return self.tracker

    def _require_reconciler(self, action: str) -> Reconciler:
        tracker = self._require_tracker(action)
        if self.reconciler is None:
            self.reconciler = Reconciler(tracker, self.state)
        return self.reconciler

    def _slot_of(self, task: Task) -> WorktreeSlot:
        slot = self.pool.slot_for_task(task.id)
        if slot is None or not task.branch_name:
            raise OperationError("No worktree", f"Task {task.id} is not assigned to an active worktree slot.")
        return slot

    # Tasks

    def add_tasks(self, tasks: list[Task]) -> None:
        self.state.tasks.extend(tasks)
        self.save()

    def edit_task(self, task_id: str, **updates: object) -> Task:
        """Edit draft fields of a task; only FORMATTED tasks can be edited."""
        task = self.get_task(task_id)
        if task.status != TaskStatus.FORMATTED:
            raise OperationError("Edit not allowed", f"Task {task_id} is {task.status.value}; only drafts can be edited")

        data = task.model_dump()
        data.update({k: v for k, v in updates.items() if k in EDITABLE_FIELDS and v is not None})
        edited = Task.model_validate(data)
        self.state.tasks[self.state.tasks.index(task)] = edited
        self.save()
        return edited

    def delete_task(self, task_id: str) -> None:
        task = self.get_task(task_id)
        if task.status != TaskStatus.FORMATTED:
            raise OperationError(
                "Delete not allowed", f"Task {task_id} is {task.status.value}; only drafts can be deleted"
            )
        self.state.tasks.remove(task)
        self.save()

    def clear_session(self) -> None:
        """Forget all tasks and slot bindings."""
        self.state.clear_session()
        for slot in self.pool.slots:
            self.pool.release(slot.id)
        self.save()

    # Issues

    async def promote(self, task_id: str) -> Task:
        """Create the GitHub issue for a drafted task."""
        tracker = self._require_tracker("create issues")
        task = self.get_task(task_id)
        if task.status != TaskStatus.FORMATTED:
            raise OperationError("Already promoted", f"Task {task_id} is already {task.status.value}")

        try:
            issue = await tracker.create_issue(task.title, build_issue_body(task), build_issue_labels(task))
        except FlowizeError as e:
            raise OperationError(
                "GitHub Issue Creation Failed", f"Failed to create issue on GitHub: {error_message(e)}"
            ) from e

        task.issue_number = issue.number
        task.issue_url = issue.url or None
        transition(task, "promote")
        self.save()
        logger.info("Task %s promoted to issue #%s", task.id, issue.number)
        return task

    async def promote_all(self) -> list[Task]:
        """Promote every drafted task, one at a time."""
        self._require_tracker("create issues")
        promoted = []
        for task in [t for t in self.state.tasks if t.status == TaskStatus.FORMATTED]:
            promoted.append(await self.promote(task.id))
        return promoted

    async def fetch_issues(self) -> list[Task]:
        """Replace the task list with the repository's open issues."""
        reconciler = self._require_reconciler("fetch issues")
        tasks = await reconciler.import_open_issues()
        self.pool.drop_unknown_tasks(t.id for t in tasks)
        self.save()
        return tasks

    # Slots

    def resize_slots(self, count: int, root: Optional[str] = None) -> list[str]:
        """Change the slot count; tasks bound to dropped slots go back to the backlog."""
        released = self.pool.resize(count, root or self.config.worktree_root)
        self.state.slot_count = len(self.pool)
        self._detach_released(released)
        self.save()
        return released

    def _detach_released(self, task_ids: list[str]) -> None:
        for task_id in task_ids:
            task = self.state.get_task(task_id)
            if task is not None and task.status in LOCAL_WORKTREE_STATUSES | {TaskStatus.PUSHED}:
                self._detach(task)

    def _detach(self, task: Task) -> None:
        transition(task, "cleanup")
        task.branch_name = None
        task.clear_agent_artifacts()

    async def assign(self, task_id: str, slot_id: Optional[int] = None) -> WorktreeSlot:
        """Reserve a slot for a task and create its worktree.

        Raises:
            OperationError: If the worktree could not be created; the slot is
                released and the task reverted first
        """
        task = self.get_task(task_id)
        if slot_id is None:
            free = self.pool.find_free()
            if not free:
                raise OperationError("No free slot", "No free worktree slot available. Cleanup a slot and retry.")
            slot_id = free[0].id

        # Phase 1: reserve (no awaits between check and set)
        slot = self.pool.assign(task.id, slot_id)
        try:
            transition(task, "reserve_worktree")
        except InvalidTransitionError:
            self.pool.release(slot.id)
            raise
        task.branch_name = build_branch_name(task)
        task.agent_run_state = AgentRunState.IDLE
        self.save()

        # Phase 2: dispatch
        try:
            await self.worktrees.create(task, slot.path, slot_title(slot))
        except FlowizeError as e:
            self.pool.release(slot.id)
            transition(task, "worktree_failed")
            if task.status == TaskStatus.ISSUE_CREATED:
                task.branch_name = None
            self.save()
            raise OperationError(
                "Worktree Creation Failed",
                f"Failed to create worktree on filesystem: {error_message(e)}",
                recovery=self._cleanup_recovery(e),
            ) from e

        transition(task, "worktree_ready")
        self.save()
        logger.info("Task %s active in slot %s (%s)", task.id, slot.id, slot.path)
        return slot

    def _cleanup_recovery(self, error: FlowizeError) -> Optional[RecoveryAction]:
        """Offer to remove a worktree that blocks the one being created."""
        target = None
        if isinstance(error, ConflictError) and error.recovery is not None:
            if error.recovery.kind == RecoveryKind.CLEANUP_WORKTREE:
                target = error.recovery.target
        if target is None:
            match = _CHECKED_OUT_AT.search(str(error))
            if match:
                target = match.group(1)
        if target is None:
            return None

        async def run() -> None:
            await self.worktrees.prune(target)

        return RecoveryAction("Cleanup existing worktree", RecoveryKind.CLEANUP_WORKTREE, target=target, run=run)

    async def cleanup_slot(self, slot_id: int) -> Optional[Task]:
        """Remove a slot's worktree and send its task back to the issue backlog.

        The slot and task are reset even if filesystem cleanup fails; that
        failure is then raised as a partial completion.

        Returns:
            The detached task, if the slot had one
        """
        slot = self.pool.get(slot_id)
        task = self.state.get_task(slot.task_id) if slot.task_id else None

        cleanup_error: Optional[FlowizeError] = None
        try:
            await self.worktrees.prune(slot.path)
        except FlowizeError as e:
            cleanup_error = e

        self.pool.release(slot_id)
        if task is not None:
            if TaskStateMachine(task).can_transition_to(TaskStatus.ISSUE_CREATED.value):
                self._detach(task)
            else:
                task.clear_agent_artifacts()
        self.save()

        if self.reconciler is not None:
            try:
                await self.reconciler.prune_closed_issues()
                self.save()
            except FlowizeError as e:
                logger.warning("Issue backlog refresh after cleanup failed: %s", e)

        if cleanup_error is not None:
            raise OperationError(
                "Cleanup Partially Completed",
                f"Slot was reset, but filesystem cleanup reported: {error_message(cleanup_error)}",
            ) from cleanup_error
        return task

    # Agent

    async def run_agent(self, task_id: str, on_progress: Optional[ProgressCallback] = None) -> Task:
        """Run the agent in the task's worktree.

        Success moves the task to IMPLEMENTED; any failure leaves it in
        WORKTREE_ACTIVE with the failure recorded in its logs.
        """
        task = self.get_task(task_id)
        slot = self._slot_of(task)
        if task.status != TaskStatus.WORKTREE_ACTIVE:
            raise OperationError("Agent run", f"Task {task_id} is {task.status.value}, not WORKTREE_ACTIVE")

        task.agent_run_state = AgentRunState.RUNNING
        try:
            task.agent_last_command = self.agent.build_command(task, slot.path)
        except OperationError:
            task.agent_run_state = AgentRunState.FAILED
            self.save()
            raise
        self.save()

        try:
            result = await self.agent.run(task, slot.path, on_progress)
        except FlowizeError as e:
            cancelled = isinstance(e, CommandFailure) and e.exit_code == CANCELLED_EXIT_CODE
            self.record_implementation(
                task_id,
                implementation=f"Sub-agent failed for issue #{task.issue_number}: {error_message(e)}",
                logs=error_message(e),
                command=task.agent_last_command or "",
                success=False,
                run_state=AgentRunState.CANCELLED if cancelled else AgentRunState.FAILED,
            )
            title = "Agent Job Timed Out" if isinstance(e, JobTimeoutError) else "Agent Run Failed"
            raise OperationError(title, error_message(e)) from e

        return self.record_implementation(
            task_id, result.implementation, result.logs, result.command, success=True
        )

    def record_implementation(
        self,
        task_id: str,
        implementation: str,
        logs: str,
        command: str,
        success: bool,
        run_state: Optional[AgentRunState] = None,
    ) -> Task:
        """Store an agent outcome; success moves the task to IMPLEMENTED."""
        task = self.get_task(task_id)
        task.implementation_details = implementation
        task.agent_logs = logs
        task.agent_last_command = command
        task.agent_run_state = run_state or (AgentRunState.SUCCEEDED if success else AgentRunState.FAILED)

        if success and task.status == TaskStatus.WORKTREE_ACTIVE and implementation.strip():
            transition(task, "implemented")
            task.review_feedback = None
        self.save()
        return task

    async def cancel_agent_job(self, job_id: str) -> None:
        await self.agent.cancel(job_id)

    # Push, review and PRs

    def _force_push_recovery(self, task: Task, slot: WorktreeSlot) -> RecoveryAction:
        async def run() -> None:
            await self.worktrees.force_push_with_lease(slot.path, task.branch_name or "")
            if task.status in (TaskStatus.IMPLEMENTED, TaskStatus.WORKTREE_ACTIVE):
                transition(task, "pushed")
            self.save()

        return RecoveryAction(
            "Force push (--force-with-lease)", RecoveryKind.FORCE_PUSH_WITH_LEASE, target=task.branch_name or "", run=run
        )

    async def push(self, task_id: str, force_with_lease: bool = False) -> Task:
        """Commit and push the task's worktree branch.

        Raises:
            OperationError: On failure; a diverged branch carries a
                force-with-lease recovery
        """
        task = self.get_task(task_id)
        slot = self._slot_of(task)
        branch = task.branch_name or ""

        try:
            if force_with_lease:
                await self.worktrees.force_push_with_lease(slot.path, branch)
            else:
                await self.worktrees.push(slot.path, branch)
        except FlowizeError as e:
            message = error_message(e)
            if is_diverged_push_error(message) or (
                isinstance(e, ConflictError)
                and e.recovery is not None
                and e.recovery.kind == RecoveryKind.FORCE_PUSH_WITH_LEASE
            ):
                raise OperationError(
                    "Push Conflict Detected",
                    f"Remote branch {branch} has diverged and safe push failed. You can force push with lease "
                    f"to update this task branch while still protecting against unexpected remote changes.\n\n"
                    f"Details: {message}",
                    recovery=self._force_push_recovery(task, slot),
                ) from e
            raise OperationError("Push Failed", f"Failed to push branch: {message}") from e

        transition(task, "pushed")
        self.save()
        logger.info("Pushed %s for task %s", branch, task.id)
        return task

    async def _push_via_tracker(self, tracker: IssueTracker, task: Task) -> None:
        """Commit the implementation output directly through the tracker (no worktree)."""
        branch = task.branch_name or ""
        base_sha = await tracker.get_branch_head_sha(self.config.default_branch)
        await tracker.create_branch(branch, base_sha)
        await tracker.commit_file(
            branch,
            f"src/features/{slugify(task.group)}/{task.id}.md",
            task.implementation_details or "",
            f"feat: implement {task.title} (#{task.issue_number})",
        )

    async def approve(self, task_id: str) -> Task:
        """Push the task's work, open its pull request and free its slot.

        Raises:
            OperationError: If pushing or PR creation fails, or if the worktree
                could not be cleaned up afterwards (with a retry recovery)
        """
        tracker = self._require_tracker("create a pull request")
        task = self.get_task(task_id)
        if not task.branch_name:
            raise OperationError("Pull Request Creation Failed", f"Task {task_id} has no branch")
        if task.status not in (TaskStatus.WORKTREE_ACTIVE, TaskStatus.IMPLEMENTED, TaskStatus.PUSHED):
            raise OperationError(
                "Pull Request Creation Failed", f"Task {task_id} is {task.status.value}; nothing to approve"
            )

        slot = self.pool.slot_for_task(task.id)
        try:
            if slot is not None:
                await self.worktrees.push(slot.path, task.branch_name)
            else:
                await self._push_via_tracker(tracker, task)

            pr = await tracker.create_pull_request(
                task.branch_name,
                self.config.default_branch,
                task.title,
                f"{task.description}\n\nCloses #{task.issue_number}",
            )
        except FlowizeError as e:
            recovery = None
            if slot is not None and is_diverged_push_error(error_message(e)):
                recovery = self._force_push_recovery(task, slot)
            raise OperationError(
                "Pull Request Creation Failed", f"Failed to create PR: {error_message(e)}", recovery=recovery
            ) from e

        if task.status in (TaskStatus.WORKTREE_ACTIVE, TaskStatus.IMPLEMENTED):
            transition(task, "pushed")
        task.pr_number = pr.number
        task.issue_url = pr.url or task.issue_url
        task.ci_status = CheckState.PENDING
        task.merge_conflict = False
        transition(task, "pr_created")
        self.save()
        logger.info("Task %s opened PR #%s", task.id, pr.number)

        if slot is not None:
            await self._cleanup_after_approval(task, slot)
        return task

    async def _cleanup_after_approval(self, task: Task, slot: WorktreeSlot) -> None:
        async def retry() -> None:
            await self.worktrees.prune(slot.path, task.branch_name)
            self.pool.release(slot.id)
            self.save()

        try:
            await self.worktrees.prune(slot.path, task.branch_name)
        except FlowizeError as e:
            blocking = await processes.find_processes_using(self.bridge, slot.path)
            raise OperationError(
                "PR Created, Cleanup Failed",
                f"PR #{task.pr_number} was created, but worktree cleanup failed.\n\n"
                f"{processes.format_process_list(blocking)}\n\n"
                f'Close the processes above, then run "Retry Cleanup".\n\nError: {error_message(e)}',
                recovery=RecoveryAction("Retry Cleanup", RecoveryKind.RETRY_CLEANUP, target=slot.path, run=retry),
            ) from e

        self.pool.release(slot.id)
        self.save()

    def request_changes(self, task_id: str, feedback: str = "") -> Task:
        """Send a task back to its worktree with optional review feedback."""
        task = self.get_task(task_id)
        transition(task, "request_changes")
        task.agent_run_state = AgentRunState.IDLE
        task.review_feedback = feedback.strip() or None
        self.save()
        return task

    async def merge(self, task_id: str) -> Task:
        """Merge the task's pull request.

        Raises:
            OperationError: On failure; a merge conflict sets the task's
                conflict flag and carries a resolve-in-worktree recovery
        """
        tracker = self._require_tracker("merge pull requests")
        task = self.get_task(task_id)
        if task.status != TaskStatus.PR_CREATED or task.pr_number is None:
            raise OperationError("Merge Failed", f"Task {task_id} has no open pull request")

        try:
            await tracker.merge_pull_request(
                task.pr_number, f"Merge pull request #{task.pr_number} from {task.branch_name}"
            )
        except FlowizeError as e:
            message = error_message(e)
            if not is_merge_conflict_error(message):
                raise OperationError("Merge Failed", f"Failed to merge PR: {message}") from e

            task.merge_conflict = True
            self.save()

            async def resolve() -> None:
                await self.resolve_conflict(task_id)

            raise OperationError(
                "Merge Conflict Detected",
                f"PR #{task.pr_number} has conflicts with {self.config.default_branch}. Launch a conflict worktree "
                f"to fix and push updates, then re-run review and merge.\n\nDetails: {message}"
                f"{await self._conflict_context(tracker, task.pr_number)}",
                recovery=RecoveryAction(
                    "Resolve in Worktree", RecoveryKind.RESOLVE_IN_WORKTREE, target=task.branch_name or "", run=resolve
                ),
            ) from e

        transition(task, "merged")
        task.merge_conflict = False
        self.save()
        logger.info("Merged PR #%s for task %s", task.pr_number, task.id)
        return task

    async def _conflict_context(self, tracker: IssueTracker, pr_number: int) -> str:
        tip = (
            "\n\nTip: this usually means both branches changed overlapping lines. Open the conflict worktree, "
            f"pull latest {self.config.default_branch}, resolve markers, commit, and push."
        )
        try:
            details = await tracker.get_pull_request_details(pr_number)
        except FlowizeError as e:
            logger.debug("No conflict context for PR #%s: %s", pr_number, e)
            return tip

        mergeable = "pending" if details.mergeable is None else str(details.mergeable).lower()
        return (
            f"\n\nConflict context:\n- Base: {details.base_ref}\n- Head: {details.head_ref}\n"
            f"- mergeable_state: {details.mergeable_state}\n- mergeable: {mergeable}{tip}"
        )

    async def resolve_conflict(self, task_id: str) -> WorktreeSlot:
        """Reopen a conflicting PR's branch in the first slot that accepts it.

        Raises:
            OperationError: If no slot is free or every free slot failed; the
                task is back in PR_CREATED with its conflict flag set
        """
        task = self.get_task(task_id)
        if not task.branch_name:
            raise OperationError("Resolve Conflict Failed", "Task or branch is missing. Re-sync PRs and retry.")

        free = self.pool.find_free()
        if not free:
            raise OperationError(
                "Resolve Conflict Failed", "No free worktree slot available. Cleanup a slot and retry."
            )

        transition(task, "reserve_worktree")
        task.merge_conflict = True
        task.review_feedback = (
            f"Resolve merge conflicts for PR #{task.pr_number or '?'}, then push updates and send for review again."
        )
        task.agent_run_state = AgentRunState.IDLE
        self.save()

        attempts = []
        slot: Optional[WorktreeSlot] = None
        try:
            for candidate in free:
                try:
                    held = self.pool.assign(task.id, candidate.id)
                except ConflictError as e:
                    # Another flow took this slot while an earlier attempt was running
                    attempts.append(f"WT-{candidate.id}: {error_message(e)}")
                    continue
                self.save()
                try:
                    await self.worktrees.create(task, held.path, slot_title(held), from_existing_branch=True)
                except FlowizeError as e:
                    attempts.append(f"WT-{held.id}: {error_message(e)}")
                    self.pool.release(held.id)
                    self.save()
                    continue

                transition(task, "worktree_ready")
                task.merge_conflict = False
                self.save()
                slot = held
                break
        finally:
            if slot is None:
                bound = self.pool.slot_for_task(task.id)
                if bound is not None:
                    self.pool.release(bound.id)
                transition(task, "worktree_failed")
                task.merge_conflict = True
                self.save()

        if slot is None:
            raise OperationError(
                "Resolve Conflict Failed", f"Failed to prepare conflict workspace. Attempts: {' | '.join(attempts)}"
            )

        if self.reconciler is not None:
            try:
                await self.sync()
            except FlowizeError as e:
                logger.warning("PR sync after conflict workspace setup failed: %s", e)
        return slot

    async def check_ci(self) -> dict[str, CheckState]:
        """Refresh CI status for every task with an open PR.

        A failing lookup for one task is logged and skipped.
        """
        tracker = self._require_tracker("check CI status")
        results: dict[str, CheckState] = {}
        for task in [t for t in self.state.tasks if t.status == TaskStatus.PR_CREATED and t.branch_name]:
            try:
                state = await tracker.get_commit_status(task.branch_name or "")
            except FlowizeError as e:
                logger.error("Failed to check status for %s: %s", task.branch_name, e)
                continue
            task.ci_status = state
            results[task.id] = state
        self.save()
        return results

    async def sync(self) -> SyncReport:
        """Fold open and merged pull requests into the task list."""
        reconciler = self._require_reconciler("sync pull requests")
        report = await reconciler.sync_pull_requests()
        self.save()
        return report
