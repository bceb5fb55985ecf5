"""Seeding new tasks from drafted task records.

Drafting itself (turning free text into task records) is done by an external
model; Flowize only depends on the ``TaskDrafter`` capability and the shape of
the drafts it returns. For the CLI, drafts can also be read from a YAML or
JSON file.
"""

import json
from pathlib import Path
from typing import Iterable, Protocol

import yaml
from pydantic import BaseModel, field_validator

from flowize.tasks import Priority, Task, TaskStatus, new_task_id


class TaskDraft(BaseModel):
    title: str
    description: str = ""
    group: str = "General"
    priority: Priority = Priority.MEDIUM

    @field_validator("priority", mode="before")
    @classmethod
    def _coerce_priority(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip().capitalize()
        return v


class TaskDrafter(Protocol):
    async def analyze_tasks(self, raw_text: str) -> list[TaskDraft]: ...


def tasks_from_drafts(drafts: Iterable[TaskDraft], raw_text: str = "") -> list[Task]:
    """Turn drafts into FORMATTED tasks with fresh ids."""
    return [
        Task(
            id=new_task_id(),
            raw_text=raw_text,
            title=draft.title,
            description=draft.description,
            group=draft.group,
            priority=draft.priority,
            status=TaskStatus.FORMATTED,
        )
        for draft in drafts
    ]


def load_drafts_file(path: Path) -> list[TaskDraft]:
    """Read drafts from a YAML or JSON file.

    The file holds either a list of drafts or a mapping with a ``tasks`` list.

    Raises:
        ValueError: If the file does not contain a list of drafts
    """
    text = path.read_text()
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)

    if isinstance(data, dict):
        data = data.get("tasks")
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a list of task drafts")

    return [TaskDraft.model_validate(item) for item in data]
