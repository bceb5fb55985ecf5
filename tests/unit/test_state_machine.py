"""Tests for flowize.state_machine module."""

import pytest

from flowize.errors import FlowizeError
from flowize.state_machine import (
    InvalidTransitionError,
    TaskStateMachine,
    generate_diagram,
    get_all_states,
    get_all_transitions,
    resolve_external_status,
    transition,
)
from flowize.tasks import TaskStatus


class TestTaskStateMachine:
    """Tests for the TaskStateMachine class."""

    def test_initial_state_is_task_status(self, make_task) -> None:
        """The machine starts in the task's current status."""
        task = make_task(status=TaskStatus.WORKTREE_ACTIVE, branch_name="feat/auth-12")
        sm = TaskStateMachine(task)
        assert sm.current_state == "WORKTREE_ACTIVE"

    def test_promote_moves_draft_to_issue(self, make_task) -> None:
        """promote writes the new status back to the task."""
        task = make_task(status=TaskStatus.FORMATTED)
        assert TaskStateMachine(task).fire("promote") == TaskStatus.ISSUE_CREATED
        assert task.status == TaskStatus.ISSUE_CREATED

    def test_happy_path(self, make_task) -> None:
        """A task can walk the whole lifecycle to PR_MERGED."""
        task = make_task(status=TaskStatus.FORMATTED)
        transition(task, "promote")
        transition(task, "reserve_worktree")
        task.branch_name = "feat/auth-12"
        transition(task, "worktree_ready")
        task.implementation_details = "done"
        transition(task, "implemented")
        transition(task, "pushed")
        task.pr_number = 7
        transition(task, "pr_created")
        transition(task, "merged")
        assert task.status == TaskStatus.PR_MERGED

    def test_undefined_trigger_raises(self, make_task) -> None:
        """Skipping ahead is rejected."""
        task = make_task(status=TaskStatus.FORMATTED)
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(task, "merged")
        assert exc_info.value.source == "FORMATTED"
        assert task.status == TaskStatus.FORMATTED

    def test_unknown_trigger_raises(self, make_task) -> None:
        """An unknown trigger name is an invalid transition, not an AttributeError."""
        with pytest.raises(InvalidTransitionError):
            transition(make_task(), "teleport")

    def test_invalid_transition_is_flowize_error(self) -> None:
        assert issubclass(InvalidTransitionError, FlowizeError)

    def test_implemented_requires_output(self, make_task) -> None:
        """Empty agent output never moves a task to IMPLEMENTED."""
        task = make_task(status=TaskStatus.WORKTREE_ACTIVE, branch_name="feat/auth-12", implementation_details="  ")
        with pytest.raises(InvalidTransitionError, match="Guard rejected"):
            transition(task, "implemented")
        assert task.status == TaskStatus.WORKTREE_ACTIVE

    def test_pushed_requires_branch(self, make_task) -> None:
        task = make_task(status=TaskStatus.IMPLEMENTED, implementation_details="x")
        with pytest.raises(InvalidTransitionError):
            transition(task, "pushed")

    def test_pr_created_requires_pr_number(self, make_task) -> None:
        task = make_task(status=TaskStatus.PUSHED, branch_name="feat/auth-12")
        with pytest.raises(InvalidTransitionError):
            transition(task, "pr_created")

    def test_worktree_failed_without_pr_returns_to_issue(self, make_task) -> None:
        """A failed fresh worktree sends the task back to the backlog."""
        task = make_task(status=TaskStatus.WORKTREE_INITIALIZING, branch_name="feat/auth-12")
        assert transition(task, "worktree_failed") == TaskStatus.ISSUE_CREATED

    def test_worktree_failed_with_pr_returns_to_pr(self, make_task) -> None:
        """A failed conflict workspace sends the task back to its open PR."""
        task = make_task(status=TaskStatus.WORKTREE_INITIALIZING, branch_name="feat/auth-12", pr_number=7)
        assert transition(task, "worktree_failed") == TaskStatus.PR_CREATED

    def test_conflict_workspace_needs_branch(self, make_task) -> None:
        """Reopening a PR in a worktree requires its branch."""
        task = make_task(status=TaskStatus.PR_CREATED, pr_number=7)
        with pytest.raises(InvalidTransitionError):
            transition(task, "reserve_worktree")

        task.branch_name = "feat/auth-12"
        assert transition(task, "reserve_worktree") == TaskStatus.WORKTREE_INITIALIZING

    @pytest.mark.parametrize("status", [TaskStatus.IMPLEMENTED, TaskStatus.WORKTREE_ACTIVE, TaskStatus.PUSHED])
    def test_request_changes(self, make_task, status) -> None:
        """Review can send a task back to its worktree."""
        task = make_task(status=status, branch_name="feat/auth-12", implementation_details="x")
        assert transition(task, "request_changes") == TaskStatus.WORKTREE_ACTIVE

    def test_merged_is_terminal(self, make_task) -> None:
        task = make_task(status=TaskStatus.PR_MERGED, pr_number=7)
        sm = TaskStateMachine(task)
        assert sm.is_terminal() is True
        assert sm.get_valid_triggers() == []

    def test_can_transition_to(self, make_task) -> None:
        """can_transition_to ignores guards and rejects unknown states."""
        sm = TaskStateMachine(make_task(status=TaskStatus.WORKTREE_ACTIVE))
        assert sm.can_transition_to("IMPLEMENTED") is True
        assert sm.can_transition_to("PR_MERGED") is False
        assert sm.can_transition_to("nonexistent") is False

    def test_valid_triggers(self, make_task) -> None:
        sm = TaskStateMachine(make_task(status=TaskStatus.ISSUE_CREATED))
        assert sm.get_valid_triggers() == ["reserve_worktree"]


class TestResolveExternalStatus:
    """Tests for folding an observed PR status into a task."""

    def test_merged_never_downgrades(self, make_task) -> None:
        task = make_task(status=TaskStatus.PR_MERGED, pr_number=7)
        assert resolve_external_status(task, TaskStatus.PR_CREATED) == TaskStatus.PR_MERGED

    @pytest.mark.parametrize(
        "status",
        [TaskStatus.WORKTREE_INITIALIZING, TaskStatus.WORKTREE_ACTIVE, TaskStatus.IMPLEMENTED],
    )
    def test_local_worktree_status_kept(self, make_task, status) -> None:
        """An open-PR observation does not pull a task out of its worktree."""
        task = make_task(status=status, pr_number=7)
        assert resolve_external_status(task, TaskStatus.PR_CREATED) == status

    def test_pending_conflict_kept(self, make_task) -> None:
        task = make_task(status=TaskStatus.PUSHED, pr_number=7, merge_conflict=True)
        assert resolve_external_status(task, TaskStatus.PR_CREATED) == TaskStatus.PUSHED

    @pytest.mark.parametrize(
        "status",
        [TaskStatus.WORKTREE_INITIALIZING, TaskStatus.WORKTREE_ACTIVE, TaskStatus.IMPLEMENTED],
    )
    def test_local_worktree_status_survives_merge(self, make_task, status) -> None:
        """A merged-PR observation does not pull a task out of its worktree either."""
        task = make_task(status=status, pr_number=7, merge_conflict=True)
        assert resolve_external_status(task, TaskStatus.PR_MERGED) == status

    def test_merge_observation_wins_outside_worktree(self, make_task) -> None:
        """A merged PR is merged once the task has left its worktree."""
        task = make_task(status=TaskStatus.PR_CREATED, pr_number=7, merge_conflict=True)
        assert resolve_external_status(task, TaskStatus.PR_MERGED) == TaskStatus.PR_MERGED

    def test_pushed_task_follows_open_pr(self, make_task) -> None:
        task = make_task(status=TaskStatus.PUSHED, pr_number=7)
        assert resolve_external_status(task, TaskStatus.PR_CREATED) == TaskStatus.PR_CREATED


class TestModuleHelpers:
    """Tests for module-level helpers."""

    def test_get_all_states(self) -> None:
        states = get_all_states()
        assert states[0] == "RAW"
        assert "PR_MERGED" in states
        assert len(states) == len(TaskStatus)

    def test_get_all_transitions(self) -> None:
        triggers = {t["trigger"] for t in get_all_transitions()}
        assert {"promote", "reserve_worktree", "worktree_failed", "merged", "cleanup"} <= triggers

    def test_generate_diagram(self) -> None:
        dot = generate_diagram("Lifecycle")
        assert dot.startswith("digraph {")
        assert 'label="Lifecycle";' in dot
        assert '"PR_MERGED" [shape=doublecircle];' in dot
        assert '"FORMATTED" -> "ISSUE_CREATED" [label="promote"];' in dot
