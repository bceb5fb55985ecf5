"""Tests for CLI commands."""

from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

import pytest

from flowize.bridge import BridgeClient
from flowize.cli import main
from flowize.errors import OperationError, RecoveryAction, RecoveryKind
from flowize.reconcile import SyncReport
from flowize.slots import WorktreeSlot
from flowize.state import MemoryStateStore, WorkflowState
from flowize.tasks import CheckState, TaskStatus
from flowize.workflow import Workflow


def _text(result) -> str:
    """Command output with Rich line wrapping undone."""
    return " ".join(result.output.split())


@pytest.fixture
def real_workflow(config, make_task):
    """A workflow over in-memory state with one draft and one issue."""
    store = MemoryStateStore(WorkflowState(tasks=[
        make_task("d1", status=TaskStatus.FORMATTED, title="Draft one"),
        make_task("i1", status=TaskStatus.ISSUE_CREATED, title="Issue one"),
    ]))
    return Workflow(config, store, Mock(spec=BridgeClient))


@pytest.fixture
def mock_workflow():
    return Mock(spec=Workflow)


class TestMain:
    def test_version(self, cli_runner) -> None:
        result = cli_runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in _text(result)

    def test_help_lists_groups(self, cli_runner) -> None:
        result = cli_runner.invoke(main, ["--help"])
        for name in ("tasks", "issues", "slots", "agent", "push", "pr", "ci", "sync", "bridge", "session", "states"):
            assert name in _text(result)


class TestTaskCommands:
    """Tests for the tasks group."""

    def test_list(self, cli_runner, real_workflow) -> None:
        with patch("flowize.cli.tasks.build_workflow", return_value=real_workflow):
            result = cli_runner.invoke(main, ["tasks", "list"])

        assert result.exit_code == 0
        assert "d1" in _text(result)
        assert "i1" in _text(result)

    def test_list_filtered(self, cli_runner, real_workflow) -> None:
        with patch("flowize.cli.tasks.build_workflow", return_value=real_workflow):
            result = cli_runner.invoke(main, ["tasks", "list", "--status", "FORMATTED"])

        assert "d1" in _text(result)
        assert "i1" not in _text(result)

    def test_add_from_file(self, cli_runner, real_workflow, tmp_path: Path) -> None:
        drafts = tmp_path / "drafts.yaml"
        drafts.write_text("- title: Add cart\n  group: Checkout\n")

        with patch("flowize.cli.tasks.build_workflow", return_value=real_workflow):
            result = cli_runner.invoke(main, ["tasks", "add", str(drafts)])

        assert result.exit_code == 0
        assert "Added 1 task(s)" in _text(result)
        assert real_workflow.tasks[-1].title == "Add cart"

    def test_add_rejects_bad_file(self, cli_runner, tmp_path: Path) -> None:
        drafts = tmp_path / "drafts.yaml"
        drafts.write_text("title: lonely\n")

        result = cli_runner.invoke(main, ["tasks", "add", str(drafts)])
        assert result.exit_code == 1
        assert "does not contain a list" in _text(result)

    def test_edit_draft(self, cli_runner, real_workflow) -> None:
        with patch("flowize.cli.tasks.build_workflow", return_value=real_workflow):
            result = cli_runner.invoke(main, ["tasks", "edit", "d1", "--title", "Renamed", "--priority", "high"])

        assert result.exit_code == 0
        assert real_workflow.get_task("d1").title == "Renamed"

    def test_edit_promoted_task_fails(self, cli_runner, real_workflow) -> None:
        """Promoted tasks are read-only."""
        with patch("flowize.cli.tasks.build_workflow", return_value=real_workflow):
            result = cli_runner.invoke(main, ["tasks", "edit", "i1", "--title", "Nope"])

        assert result.exit_code == 1
        assert "only drafts can be edited" in _text(result)

    def test_delete(self, cli_runner, real_workflow) -> None:
        with patch("flowize.cli.tasks.build_workflow", return_value=real_workflow):
            result = cli_runner.invoke(main, ["tasks", "delete", "d1"])

        assert result.exit_code == 0
        assert real_workflow.state.get_task("d1") is None


class TestIssueCommands:
    """Tests for the issues group."""

    def test_promote_needs_target(self, cli_runner) -> None:
        result = cli_runner.invoke(main, ["issues", "promote"])
        assert result.exit_code == 1
        assert "TASK_ID or --all" in _text(result)

    def test_promote_without_token(self, cli_runner, real_workflow) -> None:
        with patch("flowize.cli.issues.build_workflow", return_value=real_workflow):
            result = cli_runner.invoke(main, ["issues", "promote", "d1"])

        assert result.exit_code == 1
        assert "GitHub Token Required" in _text(result)

    def test_promote(self, cli_runner, mock_workflow, make_task) -> None:
        mock_workflow.promote.return_value = make_task("d1", issue_number=31)

        with patch("flowize.cli.issues.build_workflow", return_value=mock_workflow):
            result = cli_runner.invoke(main, ["issues", "promote", "d1"])

        assert result.exit_code == 0
        assert "Created issue #31" in _text(result)

    def test_fetch(self, cli_runner, mock_workflow, make_task) -> None:
        mock_workflow.tasks = []
        mock_workflow.fetch_issues.return_value = [make_task("gh-1"), make_task("gh-2")]

        with patch("flowize.cli.issues.build_workflow", return_value=mock_workflow):
            result = cli_runner.invoke(main, ["issues", "fetch"])

        assert "Imported 2 open issue(s)" in _text(result)

    def test_fetch_over_local_tasks_with_yes(self, cli_runner, mock_workflow, make_task) -> None:
        mock_workflow.tasks = [make_task("d1")]
        mock_workflow.fetch_issues.return_value = [make_task("gh-1")]

        with patch("flowize.cli.issues.build_workflow", return_value=mock_workflow):
            result = cli_runner.invoke(main, ["issues", "fetch", "-y"])

        assert result.exit_code == 0
        assert "Imported 1 open issue(s)" in _text(result)

    def test_fetch_declined_keeps_local_tasks(self, cli_runner, mock_workflow, make_task) -> None:
        """Declining the prompt leaves the current task list alone."""
        mock_workflow.tasks = [make_task("d1"), make_task("i1")]

        with patch("flowize.cli.issues.build_workflow", return_value=mock_workflow):
            result = cli_runner.invoke(main, ["issues", "fetch"], input="n\n")

        assert result.exit_code == 1
        assert "Replace 2 local task(s)" in result.output
        mock_workflow.fetch_issues.assert_not_called()


class TestSlotCommands:
    """Tests for the slots group."""

    def test_list(self, cli_runner, real_workflow) -> None:
        with patch("flowize.cli.slots.build_workflow", return_value=real_workflow):
            result = cli_runner.invoke(main, ["slots", "list"])

        assert result.exit_code == 0
        assert "WT-1" in _text(result)
        assert "WT-3" in _text(result)

    def test_assign(self, cli_runner, mock_workflow) -> None:
        mock_workflow.assign.return_value = WorktreeSlot(id=2, path="/repo-wt-2", task_id="i1")

        with patch("flowize.cli.slots.build_workflow", return_value=mock_workflow):
            result = cli_runner.invoke(main, ["slots", "assign", "i1", "--slot", "2"])

        assert result.exit_code == 0
        mock_workflow.assign.assert_called_once_with("i1", 2)
        assert "WT-2" in _text(result)

    def test_assign_offers_cleanup(self, cli_runner, mock_workflow) -> None:
        """A checked-out branch offers a cleanup, run only when confirmed."""
        prune = AsyncMock()
        mock_workflow.assign.side_effect = OperationError(
            "Worktree Creation Failed",
            "branch is already checked out at '/repo-wt-1'",
            RecoveryAction("Cleanup worktree", RecoveryKind.CLEANUP_WORKTREE, "/repo-wt-1", prune),
        )

        with patch("flowize.cli.slots.build_workflow", return_value=mock_workflow):
            declined = cli_runner.invoke(main, ["slots", "assign", "i1"], input="n\n")
            accepted = cli_runner.invoke(main, ["slots", "assign", "i1", "--yes"])

        assert declined.exit_code == 1
        assert "Worktree Creation Failed" in _text(declined)
        assert "Skipped" in _text(declined)
        assert accepted.exit_code == 0
        assert "Cleanup worktree completed" in _text(accepted)
        prune.assert_awaited_once()

    def test_resize(self, cli_runner, real_workflow) -> None:
        with patch("flowize.cli.slots.build_workflow", return_value=real_workflow):
            result = cli_runner.invoke(main, ["slots", "resize", "5"])

        assert result.exit_code == 0
        assert "5 slot(s) configured" in _text(result)


class TestPrCommands:
    """Tests for push, pr, ci and sync commands."""

    def test_push_force_with_lease(self, cli_runner, mock_workflow, make_task) -> None:
        mock_workflow.push.return_value = make_task(status=TaskStatus.PUSHED, branch_name="feat/auth-12")

        with patch("flowize.cli.pr.build_workflow", return_value=mock_workflow):
            result = cli_runner.invoke(main, ["push", "t1", "--force-with-lease"])

        assert result.exit_code == 0
        mock_workflow.push.assert_called_once_with("t1", force_with_lease=True)
        assert "Pushed feat/auth-12" in _text(result)

    def test_merge_conflict_without_recovery_run(self, cli_runner, mock_workflow) -> None:
        mock_workflow.merge.side_effect = OperationError("Merge Conflict Detected", "PR #7 has conflicts")

        with patch("flowize.cli.pr.build_workflow", return_value=mock_workflow):
            result = cli_runner.invoke(main, ["pr", "merge", "t1"])

        assert result.exit_code == 1
        assert "Merge Conflict Detected" in _text(result)

    def test_request_changes(self, cli_runner, mock_workflow, make_task) -> None:
        mock_workflow.request_changes.return_value = make_task(status=TaskStatus.WORKTREE_ACTIVE)

        with patch("flowize.cli.pr.build_workflow", return_value=mock_workflow):
            result = cli_runner.invoke(main, ["pr", "request-changes", "t1", "-f", "add tests"])

        assert result.exit_code == 0
        mock_workflow.request_changes.assert_called_once_with("t1", "add tests")

    def test_ci_check(self, cli_runner, mock_workflow) -> None:
        mock_workflow.check_ci.return_value = {"t1": CheckState.FAILED}

        with patch("flowize.cli.pr.build_workflow", return_value=mock_workflow):
            result = cli_runner.invoke(main, ["ci", "check"])

        assert "t1: failed" in _text(result)

    def test_sync(self, cli_runner, mock_workflow) -> None:
        mock_workflow.sync.return_value = SyncReport(created=["gh-pr-7"], updated=["t1", "t2"])

        with patch("flowize.cli.pr.build_workflow", return_value=mock_workflow):
            result = cli_runner.invoke(main, ["sync"])

        assert result.exit_code == 0
        assert "1 new, 2 updated, 0 kept local" in _text(result)


class TestMiscCommands:
    def test_states_dot(self, cli_runner) -> None:
        result = cli_runner.invoke(main, ["states", "--dot"])
        assert result.exit_code == 0
        assert result.output.startswith("digraph {")

    def test_states_table(self, cli_runner) -> None:
        result = cli_runner.invoke(main, ["states"])
        assert result.exit_code == 0
        assert "promote" in _text(result)

    def test_session_clear(self, cli_runner, real_workflow) -> None:
        with patch("flowize.cli.misc.build_workflow", return_value=real_workflow):
            result = cli_runner.invoke(main, ["session", "clear", "--yes"])

        assert result.exit_code == 0
        assert real_workflow.tasks == []

    def test_session_clear_aborts(self, cli_runner, real_workflow) -> None:
        with patch("flowize.cli.misc.build_workflow", return_value=real_workflow):
            result = cli_runner.invoke(main, ["session", "clear"], input="n\n")

        assert result.exit_code == 1
        assert len(real_workflow.tasks) == 2
