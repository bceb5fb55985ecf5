"""Tests for flowize.drafting module."""

import json
from pathlib import Path

import pytest

from flowize.drafting import TaskDraft, load_drafts_file, tasks_from_drafts
from flowize.tasks import Priority, TaskStatus


class TestLoadDraftsFile:
    """Tests for reading drafts from disk."""

    def test_yaml_list(self, tmp_path: Path) -> None:
        path = tmp_path / "drafts.yaml"
        path.write_text("- title: Add login\n  group: Auth\n  priority: high\n- title: Fix footer\n")

        drafts = load_drafts_file(path)
        assert [d.title for d in drafts] == ["Add login", "Fix footer"]
        assert drafts[0].priority == Priority.HIGH
        assert drafts[1].group == "General"

    def test_json_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "drafts.json"
        path.write_text(json.dumps({"tasks": [{"title": "Add login", "priority": "Low"}]}))

        drafts = load_drafts_file(path)
        assert drafts == [TaskDraft(title="Add login", priority=Priority.LOW)]

    def test_not_a_list(self, tmp_path: Path) -> None:
        path = tmp_path / "drafts.yaml"
        path.write_text("title: lonely\n")
        with pytest.raises(ValueError, match="does not contain a list"):
            load_drafts_file(path)


class TestTasksFromDrafts:
    def test_drafts_become_formatted_tasks(self) -> None:
        """Each draft gets its own id and starts as FORMATTED."""
        tasks = tasks_from_drafts([TaskDraft(title="A"), TaskDraft(title="B")], raw_text="A and B")
        assert [t.status for t in tasks] == [TaskStatus.FORMATTED, TaskStatus.FORMATTED]
        assert tasks[0].id != tasks[1].id
        assert tasks[0].raw_text == "A and B"
